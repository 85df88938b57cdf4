"""
API module for endpoint routes.

Routers:
    v1.experiences: hybrid search and embedding lifecycle endpoints
"""
