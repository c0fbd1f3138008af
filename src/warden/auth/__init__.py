"""Authentication core: credentials, tokens, revocation and lockout."""
