"""
Authflow

OAuth 2.0 authorization code flow with PKCE and OpenID Connect ID token
verification, for popup and full-page logins.

Packages:
- auth: Protocol engine (PKCE, JWKS, token verification, token endpoint
  client, session lifecycle) and the FastAPI routes
- flow: Popup login orchestration (message channel, middleware chain,
  backends, retry policy)
"""

__version__ = "1.0.0"
