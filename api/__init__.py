"""
HTTP layer: FastAPI app, routers and middleware.
"""
