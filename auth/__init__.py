"""auth/ -- Authentication and authorization core.

Token service, RBAC resolver, credential lifecycle, federated login, guards
and administration.

Layer rule: auth/ imports only from core/, stdlib and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
