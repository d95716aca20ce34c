"""Tests for ORM defaults and database-level guarantees."""

import json

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from a2p_registry.db.connection import build_engine, get_database_url
from a2p_registry.db.models import (
    A2PRegistration,
    AttemptStatus,
    AttemptType,
    ComplianceAttempt,
    PhoneNumberClaim,
    RegistrationStatus,
)


def _registration(db_session, **kwargs) -> A2PRegistration:
    registration = A2PRegistration(tenant_id="tenant-1", completed_by="user-1", **kwargs)
    db_session.add(registration)
    db_session.commit()
    return registration


def _attempt(registration: A2PRegistration, key: str, status: str = "pending") -> ComplianceAttempt:
    return ComplianceAttempt(
        tenant_id=registration.tenant_id,
        registration_id=registration.id,
        attempt_type=AttemptType.brand_registration.value,
        subject="brand",
        idempotency_key=key,
        request_data="{}",
        status=status,
    )


class TestRegistrationModel:

    def test_defaults(self, db_session):
        registration = _registration(db_session)

        assert registration.status == RegistrationStatus.draft.value
        assert registration.current_step == 0
        assert registration.version == 1
        assert registration.created_at
        assert registration.is_active
        assert not registration.is_terminal

    def test_step_payload(self, db_session):
        registration = _registration(
            db_session, brand_data=json.dumps({"legalBusinessName": "Acme"})
        )
        assert registration.step_payload("brand") == {"legalBusinessName": "Acme"}
        assert registration.step_payload("campaign") is None

    def test_rejected_is_inactive(self, db_session):
        registration = _registration(db_session, status=RegistrationStatus.rejected.value)
        assert registration.is_terminal
        assert not registration.is_active


class TestConstraints:

    def test_one_pending_attempt_per_subject(self, db_session):
        registration = _registration(db_session)
        db_session.add(_attempt(registration, "k1"))
        db_session.commit()

        db_session.add(_attempt(registration, "k2"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_finalized_attempts_do_not_block(self, db_session):
        registration = _registration(db_session)
        db_session.add(_attempt(registration, "k1", AttemptStatus.error.value))
        db_session.add(_attempt(registration, "k2", AttemptStatus.error.value))
        db_session.add(_attempt(registration, "k3"))
        db_session.commit()

        count = db_session.execute(text("SELECT COUNT(*) FROM compliance_attempts")).scalar()
        assert count == 3

    def test_one_claim_per_number(self, db_session):
        db_session.add(
            PhoneNumberClaim(phone_number="+14155550101", registration_id="r1", tenant_id="t1")
        )
        db_session.commit()

        db_session.add(
            PhoneNumberClaim(phone_number="+14155550101", registration_id="r2", tenant_id="t2")
        )
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestConnectionConfig:

    def test_database_url_precedence(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///primary.db")
        monkeypatch.setenv("A2P_DATABASE_URL", "sqlite:///secondary.db")
        assert get_database_url() == "sqlite:///primary.db"

        monkeypatch.delenv("DATABASE_URL")
        assert get_database_url() == "sqlite:///secondary.db"

        monkeypatch.delenv("A2P_DATABASE_URL")
        assert get_database_url() == "sqlite:///./a2p_registry.db"

    def test_sqlite_foreign_keys_enabled(self):
        engine = build_engine("sqlite:///:memory:")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        finally:
            engine.dispose()
