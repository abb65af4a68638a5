# PUBLIC_INTERFACE
"""
CRM Connector Backend package.

Bitrix24 OAuth credential lifecycle and resilient REST invocation, exposed
through a FastAPI application (see `crm_connector_backend.api.main`).
"""

__version__ = "0.1.0"
