"""
RxCare: Clinical Intervention Management for Pharmacies

Tracks pharmacist-led clinical interventions from identification to
outcome, with team assignment, strategy recommendation, reporting and
a compliance-grade audit trail.
"""

__version__ = "0.1.0"
__author__ = "RxCare Team"
