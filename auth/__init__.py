"""auth/ -- Credential checking and role resolution for realmauth.

Layer rule: auth/ imports only stdlib, third-party libraries and
core.config. core/ never imports from auth/.

Entry points: auth.realms.Authenticator (configured realms) and
auth.service.AuthService (one realm, explicit stores).
"""
