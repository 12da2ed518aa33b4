"""
Access to the service graph built at application startup.
"""
from fastapi import Request

from marketplace.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
