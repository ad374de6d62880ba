"""workflow/ -- Permission request / approval workflow for RouteGuard.

Layer rule: workflow/ imports from auth/ and core/. It does NOT import from
api/ or guard/.
"""
