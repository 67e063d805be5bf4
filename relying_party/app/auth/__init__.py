"""
Authentication Package

This package implements an OpenID Connect relying party for a single
identity provider, using the authorization code flow with a confidential
client.

Modules:
- discovery: provider metadata and JWKS fetching/caching
- state: single-use state/nonce store for in-flight sign-ins
- token_exchange: authorization code redemption at the token endpoint
- validation: ID token signature and claim validation
- session: server-side sessions and the route guard
- flow: the sign-in state machine wiring the above together
- routes: /login, /callback and /logout endpoints

The authentication flow:
1. A protected route (or /login) starts a sign-in and redirects to the provider
2. The user authenticates with the provider
3. The provider redirects back to /callback with a code and state
4. The code is exchanged for tokens and the ID token is validated
5. A session cookie is issued and the browser returns to the original path
"""

from .routes import auth_router
from .session import require_authentication

__all__ = [
    "auth_router",
    "require_authentication",
]
