"""HTTP surface: FastAPI app, control routes and the SSE broadcaster."""
