"""
Home Package

Sample application routes: a public index and a protected claims page.
"""

from .routes import home_router

__all__ = [
    "home_router",
]
