"""OIDC relying party service."""
