"""auth/ -- Identity, sessions, CSRF, email privacy and team authorization for tillgate.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/ or ratelimit/.
api/ imports from auth/, not the other way around.
"""
