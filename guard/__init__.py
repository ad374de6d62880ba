"""guard/ -- Declarative route authorization for RouteGuard.

Layer rule: guard/ imports from auth/ and core/. It does NOT import from
api/ or workflow/; api/main.py installs the middleware.
"""
