# registry_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .identity import FamilyMember, FamilyRelation, Identity, MaritalStatus
from .transfer import ExportJob, ImportJob, TransferJobStatus

__all__ = [
    "db",
    "BaseModel",
    "Identity",
    "FamilyMember",
    "FamilyRelation",
    "MaritalStatus",
    "ImportJob",
    "ExportJob",
    "TransferJobStatus",
]
