"""
AIRC Core Package
=================
Identity and message-authentication layer for the AIRC chat protocol.

Provides:
- Ed25519 handle ownership, key rotation and revocation (recovery-key signed)
- Signed-message verification with a phased enforcement policy
- Replay protection, rate limiting, audit log and revocation quarantine
- Pluggable storage interface (SQLite default, in-memory)
- FastAPI surface and a requests-based client
"""
