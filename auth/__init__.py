"""auth/ -- Credential authentication and account protection for Gatehouse.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (settings,
base URL). It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
