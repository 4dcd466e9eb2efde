# kbo_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .importer import (
    STAGING_MODELS,
    BatchOperation,
    BatchStatus,
    ExtractType,
    ImportJob,
    ImportJobBatch,
    ImportJobStatus,
    StagingActivity,
    StagingAddress,
    StagingBranch,
    StagingContact,
    StagingDenomination,
    StagingEnterprise,
    StagingEstablishment,
)
from .registry import Activity, Address, Branch, Contact, Denomination, Enterprise, Establishment

__all__ = [
    "db",
    "BaseModel",
    # Registry models
    "Enterprise",
    "Establishment",
    "Branch",
    "Denomination",
    "Address",
    "Activity",
    "Contact",
    # Importer models
    "ImportJob",
    "ImportJobBatch",
    "ImportJobStatus",
    "BatchStatus",
    "BatchOperation",
    "ExtractType",
    "STAGING_MODELS",
    "StagingActivity",
    "StagingAddress",
    "StagingBranch",
    "StagingContact",
    "StagingDenomination",
    "StagingEnterprise",
    "StagingEstablishment",
]
