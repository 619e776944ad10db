"""
RxCare API

FastAPI surface over the intervention services.
"""

from rxcare.api.main import create_app

__all__ = ["create_app"]
