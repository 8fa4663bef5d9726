"""
Persistence models for the two separated stores.

Demonstrates:
- PII and PHI living in different databases with different declarative bases
- A pseudonym as the only link between the two sides
- Schemaless field payloads (JSON) so any registered entity type fits
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, String

from dualvault.models.database import ClinicalBase, IdentityBase


def _now():
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Identity record – id, pseudonym, identity + metadata fields (contains PII)
# ---------------------------------------------------------------------------
class IdentityRow(IdentityBase):
    __tablename__ = "identity_records"

    id = Column(String(128), primary_key=True)
    entity_type = Column(String(64), nullable=False)
    pseudonym = Column(String(128), unique=True, nullable=True, comment="Link to clinical record")
    data = Column(JSON, nullable=False, default=dict)
    stored_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    modified_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (Index("ix_identity_entity_type", "entity_type"),)


# ---------------------------------------------------------------------------
# Clinical record – keyed by pseudonym only, holds sensitive fields (PHI)
# ---------------------------------------------------------------------------
class ClinicalRow(ClinicalBase):
    __tablename__ = "clinical_records"

    pseudonym = Column(String(128), primary_key=True)
    entity_type = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    stored_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    modified_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    __table_args__ = (Index("ix_clinical_entity_type", "entity_type"),)
