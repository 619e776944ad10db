"""
RxCare API Routes

All API route modules.
"""

from rxcare.api.routes.interventions import router as interventions_router

__all__ = [
    "interventions_router",
]
