from datetime import datetime
from sqlalchemy import Column, String, Enum, DateTime, JSON, Index, BigInteger, Float
from sqlalchemy.orm import declarative_base
import uuid

Base = declarative_base()


class VerificationStatus:
    QUEUED = 'queued'
    RUNNING = 'running'
    DONE = 'done'
    FAILED = 'failed'


class VerificationTier:
    FULL = 'full'
    SAMPLED = 'sampled'
    METADATA_ONLY = 'metadata_only'


class Verification(Base):
    __tablename__ = 'verifications'

    # String id so the same schema runs on sqlite and postgres
    verification_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(Enum(VerificationStatus.QUEUED, VerificationStatus.RUNNING, VerificationStatus.DONE,
                         VerificationStatus.FAILED, name='verification_status'),
                    nullable=False, default=VerificationStatus.QUEUED)
    tier = Column(String(32), nullable=True)
    dataset_id = Column(String(255), nullable=False)
    uploader_id = Column(String(255), nullable=False)
    input_uri = Column(String(512), nullable=False)
    file_size = Column(BigInteger, nullable=True)
    evidence_prefix = Column(String(512), nullable=True)
    metadata_json = Column(JSON, nullable=True)
    report_json = Column(JSON, nullable=True)
    verdict = Column(String(32), nullable=True)
    confidence = Column(Float, nullable=True)
    error_code = Column(String(100), nullable=True)
    error_message = Column(String(1000), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('idx_verifications_created_at', 'created_at'),
        Index('idx_verifications_status', 'status'),
        Index('idx_verifications_uploader', 'uploader_id'),
    )

    def to_dict(self):
        return {
            'verification_id': self.verification_id,
            'status': self.status,
            'tier': self.tier,
            'dataset_id': self.dataset_id,
            'uploader_id': self.uploader_id,
            'input_uri': self.input_uri,
            'file_size': self.file_size,
            'evidence_prefix': self.evidence_prefix,
            'verdict': self.verdict,
            'confidence': self.confidence,
            'report_json': self.report_json,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class RegistryRecord(Base):
    __tablename__ = 'sensor_registries'

    fingerprint = Column(String(64), primary_key=True)
    uploader_id = Column(String(255), nullable=False, index=True)
    registry_json = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
