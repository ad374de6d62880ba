"""auth/ -- Authentication, session registry and RBAC package for RouteGuard.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and cache/.
It does NOT import from api/, guard/, or workflow/.
api/, guard/ and workflow/ import from auth/, not the other way around.
"""
