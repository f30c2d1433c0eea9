"""security/ -- IP access control, throttling, captcha and the audit log for Gatehouse.

Layer rule: security/ imports only core/ + third-party libraries.
auth/ and api/ import from security/, not the other way around.
"""
