"""
API Layer for the VisionEra Gateway

This package provides the FastAPI-based API layer that exposes:
- Dashboard endpoints authenticated with Firebase ID tokens
- The public v1 API authenticated with tenant API keys
- Super-admin endpoints, payments webhook and health checks

The API layer sits between the web dashboard / API clients and the
upstream face recognition service.
"""
