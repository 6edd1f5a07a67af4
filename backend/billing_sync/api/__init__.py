"""
API routers.

All routers are mounted under /api by create_app.
"""
