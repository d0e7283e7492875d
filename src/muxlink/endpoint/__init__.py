"""Local HTTP control endpoint for muxlink.

Exposes a session orchestrator to an external UI process over
FastAPI on localhost.
"""
