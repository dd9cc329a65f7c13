"""
API Routes Package

This package contains route handlers organized by feature:
- account.py: /api/me, /api/auth/init, /api/auth/session
- frs_proxy.py: authenticated pass-through to FRS detect/verify
- face_search.py: dashboard 1:1 / 1:N / N:N searches and stored requests
- share.py: share tokens and public result retrieval
- api_keys.py: tenant API key self-service
- api_v1.py: public API (API key authentication)
- payments.py: Razorpay webhook, subscription status / subscribe / cancel
- contact.py: contact form relay
- admin.py: super-admin dashboard API
"""

from api.routes.account import router as account_router
from api.routes.admin import router as admin_router
from api.routes.api_keys import router as api_keys_router
from api.routes.api_v1 import router as api_v1_router
from api.routes.contact import router as contact_router
from api.routes.face_search import router as face_search_router
from api.routes.frs_proxy import router as frs_proxy_router
from api.routes.payments import router as payments_router
from api.routes.share import router as share_router

__all__ = [
    "account_router",
    "admin_router",
    "api_keys_router",
    "api_v1_router",
    "contact_router",
    "face_search_router",
    "frs_proxy_router",
    "payments_router",
    "share_router",
]
