"""auth/ -- Authentication and identity-verification core for Keyway.

Layer rule: auth/ imports only stdlib + third-party libraries, plus template
names from mail/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
