from .http import create_app, create_auth_app, create_resource_app

__all__ = ["create_app", "create_auth_app", "create_resource_app"]
