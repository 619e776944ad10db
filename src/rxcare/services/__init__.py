"""
RxCare Services

Business operations on clinical interventions.
"""

from rxcare.services.base import service_errors
from rxcare.services.duplicates import DuplicateDetector
from rxcare.services.export import ExportResult, ExportService
from rxcare.services.interventions import CreateResult, InterventionService
from rxcare.services.numbering import NumberingService
from rxcare.services.outcomes import OutcomeService
from rxcare.services.reporting import CostParameters, ReportingService, cost_savings
from rxcare.services.team import TeamService

__all__ = [
    "service_errors",
    "DuplicateDetector",
    "ExportResult",
    "ExportService",
    "CreateResult",
    "InterventionService",
    "NumberingService",
    "OutcomeService",
    "CostParameters",
    "ReportingService",
    "cost_savings",
    "TeamService",
]
