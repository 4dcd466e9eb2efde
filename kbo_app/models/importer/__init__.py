"""
Importer-specific database models.
"""

from .schema import (
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

__all__ = [
    "STAGING_MODELS",
    "BatchOperation",
    "BatchStatus",
    "ExtractType",
    "ImportJob",
    "ImportJobBatch",
    "ImportJobStatus",
    "StagingActivity",
    "StagingAddress",
    "StagingBranch",
    "StagingContact",
    "StagingDenomination",
    "StagingEnterprise",
    "StagingEstablishment",
]
