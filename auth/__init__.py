"""auth/ -- Accounts, sessions, second factors and the login state machine for Gatehouse.

Layer rule: auth/ imports from core/, security/ and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
