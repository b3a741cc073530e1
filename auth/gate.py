"""
auth/gate.py -- Authorization Gate: bearer token -> SessionUser.

Contract, in order:
  1. Verify signature and expiry against the access-token secret. Failures
     are 401s that say "Token invalid" or "Token expired" (distinct codes)
     so the client can pick between silent refresh and forced re-login.
  2. Reject tokens present in the blacklist, whatever their signature says.
  3. Resolve the session projection cache-aside: Session Cache first; on a
     miss rebuild it from the Credential Store and repopulate the cache.
     A user that no longer exists is a NotFoundError.
  4. Return the projection as an immutable SessionUser. Route handlers get
     it through Depends(); nothing is attached to the framework request.

Fine-grained permission checks are a second layer (auth/dependencies.py)
evaluated per route after this gate has run.

Layer rule: no imports from api/, crm/, or stats/.
"""

from __future__ import annotations

import logging

from auth.models import SessionUser
from auth.store import UserStore
from auth.tokens import decode_access_token, extract_bearer
from cache.store import SessionCache, blacklist_key, user_key
from core.config import Settings
from core.errors import AuthError, ErrorCode, NotFoundError

logger = logging.getLogger("crmadmin.auth")


class AuthGate:
    def __init__(self, store: UserStore, cache: SessionCache, settings: Settings) -> None:
        self._store = store
        self._cache = cache
        self._settings = settings

    def authenticate(self, authorization: str | None) -> SessionUser:
        """Resolve an Authorization header value to a SessionUser or raise.

        Raises AuthError (401) for a missing, invalid, expired or revoked
        token, and NotFoundError (404) when the token's user has been deleted.
        """
        token = extract_bearer(authorization)
        if token is None:
            raise AuthError("Authentication required.")

        payload = decode_access_token(self._settings, token)

        if self._cache.exists(blacklist_key(token)):
            raise AuthError("Token has been revoked.", ErrorCode.TOKEN_INVALID)

        return self.load_session(payload["userId"])

    def try_authenticate(self, authorization: str | None) -> SessionUser | None:
        """Soft variant: return None instead of raising. Used by logout."""
        try:
            return self.authenticate(authorization)
        except (AuthError, NotFoundError):
            return None

    def load_session(self, user_id: int) -> SessionUser:
        """Return the cached projection for user_id, rebuilding it on a miss."""
        cached = self._cache.get_json(user_key(user_id))
        if isinstance(cached, dict):
            try:
                return SessionUser.from_cache(cached)
            except (KeyError, TypeError, ValueError):
                logger.warning("Malformed session projection for user %s; reloading", user_id)

        graph = self._store.get_user_graph_by_id(user_id)
        if graph is None:
            raise NotFoundError("User not found.")
        if not graph.user.is_enabled:
            raise AuthError("Account is disabled.", ErrorCode.USER_DISABLED)

        session = SessionUser.from_graph(graph)
        self._cache.set_json(user_key(user_id), session.to_cache(), self._settings.user_info_ttl)
        return session
