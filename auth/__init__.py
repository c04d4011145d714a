"""auth/ -- Identity package for the task manager: local accounts, OAuth login and linking, JWTs.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Configuration arrives through
constructor arguments wired in api/main.py.
api/ imports from auth/, not the other way around.
"""
