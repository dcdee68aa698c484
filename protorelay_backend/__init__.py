"""Backend for the protorelay service.

This package keeps FastAPI route handlers thin:
- scratch workspace lifecycle + orphan sweeping
- ZIP extraction with Zip Slip / zip-bomb / duplicate-entry protection
- protoc invocation producing a descriptor set
- SSRF-guarded binary relay

Security note:
Archives and relay destinations are attacker-controlled. Never extract outside a
scratch dir handed out by the workspace layer, and never relay without the host policy.
"""
