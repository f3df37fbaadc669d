"""auth/ -- Credential checks, lockout, password lifecycle and session tokens for LoginGuard.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/. auth/dependencies.py is the one module that
touches FastAPI, because it is part of the dependency injection system.
"""
