"""
Popup login orchestration.

- orchestrator: The login state machine and its error messages
- channel: Message channel and authentication window abstractions
- middleware: Hooks around orchestrator operations (logging, analytics)
- backend: In-process and HTTP authorization backends
- retry: Retry policy for idempotent backend calls
"""
