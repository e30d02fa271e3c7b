"""FastAPI dependencies: identity, access gate and service lookup."""
