import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sensorproof.registry import (
    FINGERPRINT_LOCKS,
    RegistryMutation,
    RegistryStorage,
    RegistryStorageError,
)
from sensorproof.types import SensorRegistry

from .models import RegistryRecord

logger = logging.getLogger(__name__)

INSERT_RETRIES = 1


class SqlRegistryStorage(RegistryStorage):
    """Sensor registries persisted as JSON rows, one per fingerprint."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, fingerprint: str) -> Optional[SensorRegistry]:
        db = self.session_factory()
        try:
            record = db.query(RegistryRecord).filter(RegistryRecord.fingerprint == fingerprint).first()
            if record is None:
                return None
            return SensorRegistry.from_dict(record.registry_json)
        except SQLAlchemyError as e:
            raise RegistryStorageError(f"Failed to load registry {fingerprint}: {e}") from e
        finally:
            db.close()

    def set(self, fingerprint: str, registry: SensorRegistry) -> None:
        db = self.session_factory()
        try:
            record = db.query(RegistryRecord).filter(RegistryRecord.fingerprint == fingerprint).first()
            if record is None:
                record = RegistryRecord(fingerprint=fingerprint)
                db.add(record)
            record.uploader_id = registry.reputation.uploader_id
            record.registry_json = registry.to_dict()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store registry {fingerprint}: {e}")
            raise RegistryStorageError(f"Failed to store registry {fingerprint}: {e}") from e
        finally:
            db.close()

    def update(self, fingerprint: str, mutate: RegistryMutation) -> SensorRegistry:
        """
        Read-modify-write in one transaction holding the row lock
        (SELECT ... FOR UPDATE), so workers in other processes wait their
        turn. A first insert that loses the race to another worker is
        retried against the row that worker created.
        """
        with FINGERPRINT_LOCKS.hold(fingerprint):
            for attempt in range(INSERT_RETRIES + 1):
                db = self.session_factory()
                try:
                    record = (
                        db.query(RegistryRecord)
                        .filter(RegistryRecord.fingerprint == fingerprint)
                        .with_for_update()
                        .first()
                    )
                    current = SensorRegistry.from_dict(record.registry_json) if record else None
                    registry = mutate(current)
                    if record is None:
                        record = RegistryRecord(fingerprint=fingerprint)
                        db.add(record)
                    record.uploader_id = registry.reputation.uploader_id
                    record.registry_json = registry.to_dict()
                    db.commit()
                    return registry
                except IntegrityError as e:
                    db.rollback()
                    if attempt == INSERT_RETRIES:
                        raise RegistryStorageError(f"Failed to update registry {fingerprint}: {e}") from e
                    logger.warning(f"Registry {fingerprint} created concurrently, retrying update")
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(f"Failed to update registry {fingerprint}: {e}")
                    raise RegistryStorageError(f"Failed to update registry {fingerprint}: {e}") from e
                finally:
                    db.close()

    def get_by_uploader(self, uploader_id: str) -> List[SensorRegistry]:
        db = self.session_factory()
        try:
            records = (
                db.query(RegistryRecord)
                .filter(RegistryRecord.uploader_id == uploader_id)
                .order_by(RegistryRecord.fingerprint)
                .all()
            )
            return [SensorRegistry.from_dict(r.registry_json) for r in records]
        except SQLAlchemyError as e:
            raise RegistryStorageError(f"Failed to list registries for {uploader_id}: {e}") from e
        finally:
            db.close()
