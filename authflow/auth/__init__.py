"""
Authentication Package

This package implements the relying party side of the OAuth 2.0 authorization
code flow with PKCE and OpenID Connect.

Key responsibilities:
- PKCE, state and nonce generation bound to the user's session
- Authorization URL construction
- JWKS fetching and caching with single-flight refresh
- ID token signature and claim validation
- Code exchange, refresh, revocation and introspection
- Authenticated session lifecycle

Modules:
- crypto: Random strings, SHA-256 and base64url helpers
- storage: Key/value session storage with TTL
- context: Injectable collaborators (storage, HTTP client, clock, randomness)
- pkce: Pending authorization store and authorization request builder
- jwks: Provider key set cache
- tokens: Token verifier
- client: Token endpoint client
- session: Authenticated session state machine
- service: Facade used by the routes and the in-process orchestrator
- routes: Public authentication endpoints (/auth/start, /auth/callback, /auth/api/*)
"""
