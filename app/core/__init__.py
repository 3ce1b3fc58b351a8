from .auth import create_api_key, get_principal, verify_issuance_permission

__all__ = ["create_api_key", "get_principal", "verify_issuance_permission"]
