"""auth/ -- Authentication and authorization package for the CRM admin API.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/, crm/, or stats/.
api/ imports from auth/, not the other way around.
"""
