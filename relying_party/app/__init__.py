"""
OIDC relying party web application.

Packages:
    - auth: sign-in flow (discovery, state/nonce, code exchange, validation, sessions)
    - home: sample public and protected routes
"""
