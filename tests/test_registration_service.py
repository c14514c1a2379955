import random
import threading
import uuid

import pytest

from fuelbot.models import RegistrationRequest, RequestStatus, Tenant
from fuelbot.schemas.session import OnboardingDraft
from fuelbot.services import registration_service
from fuelbot.services.errors import ConflictError, NotFoundError, TransientError


def make_request(db, company="Acme", requester_id=555):
    draft = OnboardingDraft(company_name=company, contact_name="Ana", contact_phone="5512345678", contact_email=None)
    return registration_service.create_request(db, draft, requester_id=requester_id, requester_username="ana")


class SequenceRng:
    """Deterministic stand-in for SystemRandom.choice."""

    def __init__(self, tokens):
        self.chars = iter("".join(tokens))

    def choice(self, alphabet):
        char = next(self.chars)
        assert char in alphabet
        return char


class TestTokens:
    def test_token_shape(self):
        for _ in range(50):
            token = registration_service.generate_token()
            assert registration_service.TOKEN_PATTERN.match(token)
            assert not set(token) & set("IO01")

    def test_seeded_rng(self):
        token = registration_service.generate_token(random.Random(7))
        assert registration_service.TOKEN_PATTERN.match(token)

    def test_normalize(self):
        assert registration_service.normalize_token("  abc234 ") == "ABC234"
        assert registration_service.normalize_token(None) == ""

    def test_collision_regenerates(self, db):
        db.add(Tenant(company_name="Otra", chat_id="pending_x", registration_token="ABC234"))
        db.commit()

        token = registration_service.issue_unique_token(db, SequenceRng(["ABC234", "XYZ789"]))
        assert token == "XYZ789"

    def test_consumed_tokens_are_not_reissued(self, db):
        db.add(Tenant(company_name="Otra", chat_id="-1", link_token="ABC234"))
        db.commit()
        assert registration_service.token_in_use(db, "ABC234")

    def test_gives_up_after_max_attempts(self, db):
        db.add(Tenant(company_name="Otra", chat_id="pending_x", registration_token="ABC234"))
        db.commit()
        rng = SequenceRng(["ABC234"] * registration_service.MAX_TOKEN_ATTEMPTS)
        with pytest.raises(TransientError):
            registration_service.issue_unique_token(db, rng)


class TestCreateRequest:
    def test_create_pending(self, db):
        request = make_request(db)
        assert request.status == RequestStatus.PENDING.value
        assert request.requester_id == "555"
        assert request.contact_email is None

    def test_list_pending(self, db):
        first = make_request(db, "Acme")
        second = make_request(db, "Beta")
        registration_service.reject(db, second.id, 999)

        pending = registration_service.list_pending(db)
        assert [r.id for r in pending] == [first.id]

    def test_get_request(self, db):
        request = make_request(db)
        assert registration_service.get_request(db, str(request.id)).id == request.id
        with pytest.raises(NotFoundError):
            registration_service.get_request(db, "not-a-uuid")


class TestApprove:
    def test_approve_creates_unlinked_tenant(self, db):
        request = make_request(db)

        approval = registration_service.approve(db, request.id, 999, SequenceRng(["ABC234"]))

        assert approval.token == "ABC234"
        assert approval.request.status == RequestStatus.APPROVED.value
        assert approval.request.processed_by == "999"
        assert approval.request.processed_at is not None
        tenant = approval.tenant
        assert tenant.company_name == "Acme"
        assert tenant.chat_id.startswith("pending_")
        assert tenant.is_active and tenant.is_approved
        assert tenant.registration_token == "ABC234"
        assert not tenant.is_linked

    def test_approve_twice_conflicts(self, db):
        request = make_request(db)
        registration_service.approve(db, request.id, 999)

        with pytest.raises(ConflictError) as exc_info:
            registration_service.approve(db, request.id, 999)
        assert exc_info.value.code == "already_processed"
        assert db.query(Tenant).count() == 1

    def test_approve_rejected_conflicts(self, db):
        request = make_request(db)
        registration_service.reject(db, request.id, 999, "Datos incompletos")

        with pytest.raises(ConflictError):
            registration_service.approve(db, request.id, 999)
        assert db.query(Tenant).count() == 0

    def test_unknown_request(self, db):
        with pytest.raises(NotFoundError):
            registration_service.approve(db, uuid.uuid4(), 999)
        with pytest.raises(NotFoundError):
            registration_service.approve(db, "abc", 999)


class TestReject:
    def test_reject_with_reason(self, db):
        request = make_request(db)
        rejected = registration_service.reject(db, request.id, 999, "Datos incompletos")
        assert rejected.status == RequestStatus.REJECTED.value
        assert rejected.admin_notes == "Datos incompletos"

    def test_reject_default_reason(self, db):
        request = make_request(db)
        rejected = registration_service.reject(db, request.id, 999, "  ")
        assert rejected.admin_notes == registration_service.DEFAULT_REJECTION_REASON

    def test_reject_approved_conflicts(self, db):
        request = make_request(db)
        registration_service.approve(db, request.id, 999)
        with pytest.raises(ConflictError):
            registration_service.reject(db, request.id, 999)


class TestLinkGroup:
    def approved_token(self, db, token="ABC234"):
        request = make_request(db)
        return registration_service.approve(db, request.id, 999, SequenceRng([token])).token

    def test_link_success(self, db):
        token = self.approved_token(db)

        tenant = registration_service.link_group(db, token.lower(), -100123)

        assert tenant.chat_id == "-100123"
        assert tenant.is_linked
        assert tenant.registration_token is None
        assert tenant.link_token == "ABC234"

    def test_token_single_use(self, db):
        token = self.approved_token(db)
        registration_service.link_group(db, token, -100123)

        with pytest.raises(ConflictError) as exc_info:
            registration_service.link_group(db, token, -100999)
        assert exc_info.value.code == "token_used"
        assert db.query(Tenant).filter(Tenant.chat_id == "-100999").count() == 0

    def test_invalid_token(self, db):
        with pytest.raises(NotFoundError):
            registration_service.link_group(db, "ZZZ999", -100123)
        with pytest.raises(NotFoundError):
            registration_service.link_group(db, "not-a-token", -100123)

    def test_chat_owned_by_other_tenant(self, db, linked_tenant):
        token = self.approved_token(db)
        with pytest.raises(ConflictError) as exc_info:
            registration_service.link_group(db, token, int(linked_tenant.chat_id))
        assert exc_info.value.code == "chat_linked"

        tenant = db.query(Tenant).filter(Tenant.registration_token == token).one()
        assert not tenant.is_linked


class TestConcurrency:
    def test_concurrent_approvals_have_one_winner(self, file_session_factory):
        setup = file_session_factory()
        request_id = make_request(setup).id
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = []

        def approve():
            db = file_session_factory()
            try:
                barrier.wait()
                registration_service.approve(db, request_id, 999)
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")
            except TransientError:
                outcomes.append("transient")
            finally:
                db.close()

        threads = [threading.Thread(target=approve) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        check = file_session_factory()
        assert check.query(Tenant).count() == 1
        assert check.get(RegistrationRequest, request_id).status == RequestStatus.APPROVED.value
        check.close()

    def test_concurrent_links_have_one_winner(self, file_session_factory):
        setup = file_session_factory()
        request = make_request(setup)
        token = registration_service.approve(setup, request.id, 999).token
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = {}

        def link(chat_id):
            db = file_session_factory()
            try:
                barrier.wait()
                registration_service.link_group(db, token, chat_id)
                outcomes[chat_id] = "ok"
            except (ConflictError, TransientError) as e:
                outcomes[chat_id] = e.code
            finally:
                db.close()

        threads = [threading.Thread(target=link, args=(chat_id,)) for chat_id in (-1001, -1002)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert list(outcomes.values()).count("ok") == 1
        check = file_session_factory()
        linked = check.query(Tenant).filter(Tenant.link_token == token).one()
        assert linked.chat_id in ("-1001", "-1002")
        check.close()
