"""
API v1 Router
=============

Main router that combines all API v1 endpoints.
"""

from fastapi import APIRouter

from app.api.v1.endpoints import exports, forms


api_router = APIRouter()

api_router.include_router(forms.router, tags=["Forms"])
api_router.include_router(exports.router, tags=["Exports"])
