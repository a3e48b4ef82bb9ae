"""
Shared FastAPI dependencies - resolve app-scoped services from app.state.
"""
from fastapi import Request

from monzo_connector.services.request_manager import RequestManager
from monzo_connector.utils.auth import Authenticator


def get_request_manager(request: Request) -> RequestManager:
    return request.app.state.request_manager


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def get_callback_client(request: Request):
    return request.app.state.request_manager.callbacks
