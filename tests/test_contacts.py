from datetime import datetime, timedelta

import pytest

from vaultbox import envelope, models
from vaultbox.auth import record_owner_login
from vaultbox.contacts import REVOKED_NOTE
from vaultbox.errors import (
    AlreadyHasContact, Forbidden, InvalidContactState, InvalidPeriod, NotFound, VaultError,
)
from vaultbox.utils import hash_value

T0 = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def owner(make_user):
    return make_user(full_name="Olive Owner")


def _invite(registry, owner, sink, **extra):
    data = {"name": "Carol Contact", "email": " Carol@Example.com ", **extra}
    contact = registry.add(owner.id, data, now=T0)
    code = sink.of_type("contact_invited")[-1].verification_code
    return contact, code


class TestAdd:

    def test_new_contact_is_pending(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        assert contact.status == "pending"
        assert contact.email == "carol@example.com"
        assert contact.waiting_period == "1 day"
        assert contact.inactivity_period == "30 days"
        assert contact.last_inactivity_reset_date == T0
        assert contact.verification_code_hash == hash_value(code)
        invited = sink.of_type("contact_invited")[0]
        assert invited.owner_name == "Olive Owner"

    def test_periods_are_normalised(self, registry, owner, sink):
        contact, _ = _invite(registry, owner, sink, waiting_period="72 hours", inactivity_period="2 weeks")
        assert contact.waiting_period == "3 days"
        assert contact.inactivity_period == "1 day"

    def test_bare_inactivity_number_means_days(self, registry, owner, sink):
        contact, _ = _invite(registry, owner, sink, inactivity_period=30, waiting_period=48)
        assert contact.inactivity_period == "30 days"
        assert contact.waiting_period == "2 days"

    def test_wait_longer_than_lapse_period_rejected(self, registry, owner, db):
        with pytest.raises(InvalidPeriod):
            registry.add(owner.id, {"name": "Carol", "email": "carol@example.com", "waiting_period": "10 days"}, now=T0)
        assert db.query(models.TrustedContact).count() == 0

    def test_huge_period_rejected(self, registry, owner):
        with pytest.raises(InvalidPeriod):
            registry.add(owner.id, {"name": "Carol", "email": "carol@example.com",
                                    "inactivity_period": "999999999999 days"}, now=T0)

    def test_one_live_contact_per_owner(self, registry, owner, sink):
        _invite(registry, owner, sink)
        with pytest.raises(AlreadyHasContact):
            registry.add(owner.id, {"name": "Dave", "email": "dave@example.com"}, now=T0)

    def test_unknown_owner(self, registry):
        with pytest.raises(NotFound):
            registry.add("ghost", {"name": "x", "email": "x@example.com"}, now=T0)

    def test_declined_contact_frees_the_slot(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        registry.decline(contact.id, code)
        replacement = registry.add(owner.id, {"name": "Dave", "email": "dave@example.com"}, now=T0)
        assert replacement.status == "pending"
        assert len(registry.list_for_owner(owner.id)) == 2


class TestConfirm:

    def test_confirm_with_code(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        confirmed = registry.confirm(contact.id, code.lower(), now=T0 + timedelta(hours=2))
        assert confirmed.status == "active"
        assert confirmed.verified_at == T0 + timedelta(hours=2)
        assert confirmed.last_inactivity_reset_date == T0 + timedelta(hours=2)
        assert confirmed.verification_code_hash is None

    def test_wrong_code(self, registry, owner, sink):
        contact, _ = _invite(registry, owner, sink)
        with pytest.raises(Forbidden):
            registry.confirm(contact.id, "0000-0000-0000-0000")

    def test_confirm_only_once(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        registry.confirm(contact.id, code)
        with pytest.raises(InvalidContactState):
            registry.confirm(contact.id, code)

    def test_confirm_stores_public_key(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        public = envelope.export_public_key(envelope.generate_keypair())
        confirmed = registry.confirm(contact.id, code, public_key=public)
        assert confirmed.public_key == public

    def test_confirm_rejects_bad_public_key(self, registry, owner, sink):
        contact, code = _invite(registry, owner, sink)
        with pytest.raises(VaultError):
            registry.confirm(contact.id, code, public_key="bm90LWEta2V5")


class TestWrappedKey:

    def test_store_requires_public_key(self, registry, owner, make_contact):
        contact = make_contact(owner)
        with pytest.raises(InvalidContactState):
            registry.store_wrapped_key(contact.id, owner.id, "AAAA")

    def test_store_and_unwrap(self, registry, owner, make_contact):
        private = envelope.generate_keypair()
        contact = make_contact(owner, public_key=envelope.export_public_key(private))
        content_key = envelope.generate_key()
        wrapped = envelope.wrap_key_for_contact(content_key, contact.public_key)
        stored = registry.store_wrapped_key(contact.id, owner.id, wrapped)
        assert envelope.unwrap_key(stored.wrapped_key, private) == content_key

    def test_store_rejects_non_base64(self, registry, owner, make_contact):
        contact = make_contact(owner, public_key="c3Br")
        with pytest.raises(VaultError):
            registry.store_wrapped_key(contact.id, owner.id, "not base64 !!")

    def test_only_owner_may_store(self, registry, owner, make_contact, make_user):
        contact = make_contact(owner, public_key="c3Br")
        with pytest.raises(Forbidden):
            registry.store_wrapped_key(contact.id, make_user().id, "AAAA")


class TestRevoke:

    def test_revoke_denies_pending_and_drops_key(self, registry, machine, owner, make_contact, sink):
        contact = make_contact(owner, public_key="c3Br", wrapped_key="AAAA")
        request = machine.create(contact.id, "x", now=T0)
        revoked = registry.revoke(contact.id, owner.id, now=T0 + timedelta(hours=1))
        assert revoked.status == "revoked"
        assert revoked.wrapped_key is None

        stored = machine.get(request.id)
        machine.db.refresh(stored)
        assert stored.status == "denied"
        assert stored.response_message == REVOKED_NOTE
        assert stored.resolved_by == "owner"
        assert [e.request_id for e in sink.of_type("access_request_denied")] == [request.id]
        assert len(sink.of_type("trusted_contact_revoked")) == 1

    def test_revoke_kills_outstanding_token(self, registry, machine, owner, make_contact):
        contact = make_contact(owner)
        request = machine.create(contact.id, "x", now=T0)
        approved = machine.respond(request.id, owner.id, "approve", now=T0)
        token = approved.access_token
        assert machine.verify_token(token, now=T0 + timedelta(hours=1)).valid

        registry.revoke(contact.id, owner.id, now=T0 + timedelta(hours=2))
        check = machine.verify_token(token, now=T0 + timedelta(hours=3))
        assert not check.valid
        assert check.reason == "contact_not_active"

    def test_revoke_is_idempotent(self, registry, owner, make_contact, sink):
        contact = make_contact(owner)
        registry.revoke(contact.id, owner.id, now=T0)
        registry.revoke(contact.id, owner.id, now=T0)
        assert len(sink.of_type("trusted_contact_revoked")) == 1

    def test_revoke_by_other_owner(self, registry, owner, make_contact, make_user):
        contact = make_contact(owner)
        with pytest.raises(Forbidden):
            registry.revoke(contact.id, make_user().id, now=T0)

    def test_audit_trail_survives_revoke(self, registry, owner, make_contact, db):
        contact = make_contact(owner)
        registry.revoke(contact.id, owner.id, now=T0)
        assert db.get(models.TrustedContact, contact.id) is not None
        actions = [a.action for a in db.query(models.Audit).filter(models.Audit.owner_id == owner.id)]
        assert "contact_revoked" in actions


class TestInactivityReset:

    def test_explicit_reset(self, registry, owner, make_contact):
        contact = make_contact(owner)
        reset = registry.reset_inactivity(contact.id, owner_id=owner.id, now=T0 + timedelta(days=3))
        assert reset.last_inactivity_reset_date == T0 + timedelta(days=3)

    def test_reset_on_revoked_contact(self, registry, owner, make_contact):
        contact = make_contact(owner, status="revoked")
        with pytest.raises(InvalidContactState):
            registry.reset_inactivity(contact.id, owner_id=owner.id, now=T0)

    def test_login_moves_clock_forward(self, db, owner, make_contact):
        contact = make_contact(owner)
        user = record_owner_login(db, owner.id, now=T0 + timedelta(days=5))
        assert user.last_activity_at == T0 + timedelta(days=5)
        db.refresh(contact)
        assert contact.last_inactivity_reset_date == T0 + timedelta(days=5)

    def test_login_never_moves_clock_back(self, db, owner, make_contact):
        contact = make_contact(owner)
        record_owner_login(db, owner.id, now=T0 - timedelta(days=1))
        db.refresh(contact)
        assert contact.last_inactivity_reset_date == T0

    def test_login_without_contact(self, db, owner):
        assert record_owner_login(db, owner.id, now=T0).last_activity_at == T0

    def test_login_unknown_owner(self, db):
        assert record_owner_login(db, "ghost", now=T0) is None
