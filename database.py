import os

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from security import utcnow

# Server tables and client cache tables live in separate databases.
Base = declarative_base()
ClientBase = declarative_base()


def make_engine(db_url: str):
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
        database = make_url(db_url).database
        if database and database != ":memory:":
            directory = os.path.dirname(os.path.abspath(database))
            os.makedirs(directory, exist_ok=True)
    return create_engine(db_url, connect_args=connect_args)


def make_session_factory(engine):
    # Returned rows are read after the session closes.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine) -> None:
    Base.metadata.create_all(bind=engine)


def init_client_db(engine) -> None:
    ClientBase.metadata.create_all(bind=engine)


# Server models
class LicenseRecord(Base):
    __tablename__ = "licenses"

    id = Column(String(36), primary_key=True)
    license_key_hash = Column(String(64), unique=True, nullable=False, index=True)
    purchase_reference = Column(String(255), nullable=False, default="unknown")
    owner_email = Column(String(255), nullable=False, default="unknown")
    max_devices = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class DeviceActivation(Base):
    __tablename__ = "device_activations"

    id = Column(String(36), primary_key=True)
    license_id = Column(String(36), ForeignKey("licenses.id"), nullable=False, index=True)
    device_id_hash = Column(String(64), nullable=False, index=True)
    device_label = Column(String(255), nullable=False, default="Unknown Device")

    activated_at = Column(DateTime, nullable=False, default=utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("license_id", "device_id_hash", name="uq_license_device"),
    )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


# Client models
class LocalLicenseCache(ClientBase):
    """Offline copy of the activation state.

    This is a plain cache with no confidentiality guarantee. Integrity of
    the activation comes from the server-signed token, never from this row.
    """

    __tablename__ = "local_license_cache"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(255), unique=True, nullable=False, index=True)
    device_id = Column(String(64), nullable=False)
    device_name = Column(String(255))

    token = Column(Text)
    licensee = Column(String(255))
    purchase_date = Column(String(64))

    # Status
    is_valid = Column(Boolean, default=True)
    last_heartbeat = Column(DateTime)
    cached_at = Column(DateTime, default=utcnow)


class LocalLicenseValidationAttempt(ClientBase):
    __tablename__ = "local_license_validation_attempts"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(20), nullable=False)  # activate, heartbeat, deactivate

    # Attempt Result
    result = Column(String(20), nullable=False)  # success, failed, offline
    error_message = Column(Text)

    # Context
    device_id = Column(String(64))
    attempted_at = Column(DateTime, default=utcnow, index=True)
