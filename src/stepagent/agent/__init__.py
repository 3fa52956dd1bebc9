from .api_client import APIClient, APIError, ControlPlane

__all__ = ["APIClient", "APIError", "ControlPlane"]
