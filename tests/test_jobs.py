import pytest

from lorabooth.core.errors import (
    InsufficientCredit, JobNotFound, ProviderUnavailable, StorageTransient, ValidationError,
)
from lorabooth.jobs import JobGateway
from lorabooth.models.job import JobKind, JobStatus
from lorabooth.wallet import REASON_PURCHASE
from tests.helpers import fetch_jobs, insert_job, insert_pack

S3_ZIP  = "https://lorabooth-uploads.s3.amazonaws.com/models/1712345678901_ab12.zip"
WEIGHTS = "https://cdn.example.com/lora.safetensors"


@pytest.fixture
def gateway(provider, ledger):
    return JobGateway(provider, ledger, ledger.db_path)


async def _trained_model(db_path, user_id="user_1", model_id="mdl_ready"):
    await insert_job(
        db_path, model_id, user_id=user_id, status=JobStatus.SUCCEEDED, output_ref=WEIGHTS,
    )
    return model_id


# ─────────────────────────────────────────────
# Training
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_training_with_exactly_twenty_credits(gateway, ledger, fake_replicate):
    await ledger.credit("user_1", 20, REASON_PURCHASE, "order_1")

    job = await gateway.submit_training("user_1", S3_ZIP, "ravi", {"age": 30})

    assert job.status == JobStatus.PENDING
    assert job.kind == JobKind.TRAINING
    assert job.provider_request_id == "pred_1"
    assert await ledger.get_balance("user_1") == 0

    [body] = fake_replicate.creates
    assert body["input"]["input_images"] == S3_ZIP
    assert body["input"]["trigger_word"] == "ravi"
    assert body["webhook"] == "https://hooks.example.com/replicate/webhook/train"
    assert body["webhook_events_filter"] == ["completed"]

    [row] = await fetch_jobs(ledger.db_path)
    assert row["id"] == job.id
    assert row["cost"] == 20


@pytest.mark.asyncio
async def test_training_short_one_credit_is_rejected_before_provider(gateway, ledger, fake_replicate):
    await ledger.credit("user_1", 19, REASON_PURCHASE, "order_1")

    with pytest.raises(InsufficientCredit):
        await gateway.submit_training("user_1", S3_ZIP, "ravi")

    assert fake_replicate.requests == []
    assert await fetch_jobs(ledger.db_path) == []
    assert await ledger.get_balance("user_1") == 19


@pytest.mark.asyncio
async def test_training_provider_failure_records_and_charges_nothing(gateway, ledger, fake_replicate):
    await ledger.credit("user_1", 20, REASON_PURCHASE, "order_1")
    fake_replicate.fail_all = True

    with pytest.raises(ProviderUnavailable):
        await gateway.submit_training("user_1", S3_ZIP, "ravi")

    assert await fetch_jobs(ledger.db_path) == []
    assert await ledger.get_balance("user_1") == 20


@pytest.mark.asyncio
async def test_training_checks_foreign_archive_with_head(gateway, ledger, fake_replicate):
    await ledger.credit("user_1", 20, REASON_PURCHASE, "order_1")
    fake_replicate.head_status = 404

    with pytest.raises(ValidationError):
        await gateway.submit_training("user_1", "https://files.example.com/me.zip", "ravi")

    assert [r.method for r in fake_replicate.requests] == ["HEAD"]
    assert await ledger.get_balance("user_1") == 20


@pytest.mark.asyncio
@pytest.mark.parametrize("zip_url,name", [("", "ravi"), (S3_ZIP, "  "), ("ftp://x/y.zip", "ravi")])
async def test_training_input_validation(gateway, ledger, zip_url, name):
    await ledger.credit("user_1", 20, REASON_PURCHASE, "order_1")
    with pytest.raises(ValidationError):
        await gateway.submit_training("user_1", zip_url, name)


@pytest.mark.asyncio
async def test_failed_debit_after_acceptance_is_queued(gateway, ledger, monkeypatch):
    await ledger.credit("user_1", 20, REASON_PURCHASE, "order_1")

    async def storage_down(*args, **kwargs):
        raise StorageTransient("database is locked")

    monkeypatch.setattr(ledger, "try_debit", storage_down)
    job = await gateway.submit_training("user_1", S3_ZIP, "ravi")

    # the job survives, the debit is owed
    assert len(await fetch_jobs(ledger.db_path)) == 1
    [pending] = await ledger.get_pending_debits()
    assert pending.ref_id == job.id
    assert pending.amount == 20
    monkeypatch.undo()

    assert await ledger.settle_pending_debits() == 1
    assert await ledger.get_balance("user_1") == 0


# ─────────────────────────────────────────────
# Single image
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_image_generation_uses_model_weights(gateway, ledger, fake_replicate):
    model_id = await _trained_model(ledger.db_path)
    await ledger.credit("user_1", 1, REASON_PURCHASE, "order_1")

    job = await gateway.submit_image("user_1", model_id, "astronaut portrait")

    assert job.model_id == model_id
    assert await ledger.get_balance("user_1") == 0
    [body] = fake_replicate.creates
    assert body["input"]["lora_url"] == WEIGHTS
    assert body["webhook"].endswith("/replicate/webhook/image")


@pytest.mark.asyncio
async def test_image_requires_a_ready_model_owned_by_user(gateway, ledger, fake_replicate):
    await ledger.credit("user_1", 5, REASON_PURCHASE, "order_1")
    await insert_job(ledger.db_path, "mdl_training", status=JobStatus.PROCESSING)
    await _trained_model(ledger.db_path, user_id="user_2", model_id="mdl_other")

    for model_id in ("mdl_training", "mdl_other", "mdl_missing"):
        with pytest.raises(ValidationError):
            await gateway.submit_image("user_1", model_id, "portrait")

    assert fake_replicate.requests == []


# ─────────────────────────────────────────────
# Packs
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_pack_with_exact_balance_succeeds(gateway, ledger, fake_replicate):
    model_id = await _trained_model(ledger.db_path)
    await insert_pack(ledger.db_path, "pack_office", ["desk", "meeting", "coffee"])
    await ledger.credit("user_1", 3, REASON_PURCHASE, "order_1")

    jobs = await gateway.submit_pack("user_1", "pack_office", model_id)

    assert len(jobs) == 3
    assert len({j.batch_id for j in jobs}) == 1
    assert len(fake_replicate.creates) == 3
    assert await ledger.get_balance("user_1") == 0

    # one ledger entry for the whole batch
    debits = [e for e in await ledger.get_ledger("user_1") if e.is_debit]
    assert [(e.delta, e.ref_id) for e in debits] == [(-3, jobs[0].batch_id)]


@pytest.mark.asyncio
async def test_pack_one_credit_short_makes_no_provider_call(gateway, ledger, fake_replicate):
    model_id = await _trained_model(ledger.db_path)
    await insert_pack(ledger.db_path, "pack_office", ["desk", "meeting", "coffee"])
    await ledger.credit("user_1", 2, REASON_PURCHASE, "order_1")

    with pytest.raises(InsufficientCredit):
        await gateway.submit_pack("user_1", "pack_office", model_id)

    assert fake_replicate.requests == []
    assert await ledger.get_balance("user_1") == 2


@pytest.mark.asyncio
async def test_pack_partial_failure_bills_accepted_units_only(gateway, ledger, fake_replicate):
    model_id = await _trained_model(ledger.db_path)
    await insert_pack(ledger.db_path, "pack_office", ["desk", "meeting", "coffee"])
    await ledger.credit("user_1", 3, REASON_PURCHASE, "order_1")
    fake_replicate.reject = {"meeting"}

    jobs = await gateway.submit_pack("user_1", "pack_office", model_id)

    assert sorted(j.input_ref for j in jobs) == ["coffee", "desk"]
    assert await ledger.get_balance("user_1") == 1


@pytest.mark.asyncio
async def test_pack_all_rejected_is_provider_unavailable(gateway, ledger, fake_replicate):
    model_id = await _trained_model(ledger.db_path)
    await insert_pack(ledger.db_path, "pack_office", ["desk", "meeting"])
    await ledger.credit("user_1", 2, REASON_PURCHASE, "order_1")
    fake_replicate.fail_all = True

    with pytest.raises(ProviderUnavailable):
        await gateway.submit_pack("user_1", "pack_office", model_id)

    assert await ledger.get_balance("user_1") == 2
    assert len(await fetch_jobs(ledger.db_path)) == 1   # only the model


@pytest.mark.asyncio
async def test_empty_pack_is_validation_error(gateway, ledger):
    model_id = await _trained_model(ledger.db_path)
    with pytest.raises(ValidationError):
        await gateway.submit_pack("user_1", "pack_missing", model_id)


# ─────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_model_status_is_scoped_to_owner(gateway, ledger):
    model_id = await _trained_model(ledger.db_path)

    status = await gateway.get_model_status("user_1", model_id)
    assert status["status"] == "succeeded"
    assert status["name"] == "ravi"

    with pytest.raises(JobNotFound):
        await gateway.get_model_status("user_2", model_id)
    with pytest.raises(JobNotFound):
        await gateway.get_model_status("user_1", "mdl_nope")


@pytest.mark.asyncio
async def test_list_images_hides_failed(gateway, ledger):
    await insert_job(ledger.db_path, "img_ok", kind=JobKind.IMAGE, status=JobStatus.SUCCEEDED, cost=1)
    await insert_job(ledger.db_path, "img_wip", kind=JobKind.IMAGE, cost=1)
    await insert_job(ledger.db_path, "img_bad", kind=JobKind.IMAGE, status=JobStatus.FAILED, cost=1)
    await insert_job(ledger.db_path, "img_theirs", user_id="user_2", kind=JobKind.IMAGE, cost=1)

    images = await gateway.list_images("user_1")
    assert sorted(j.id for j in images) == ["img_ok", "img_wip"]

    only = await gateway.list_images("user_1", ids=["img_ok", "img_bad"])
    assert [j.id for j in only] == ["img_ok"]


@pytest.mark.asyncio
async def test_list_models(gateway, ledger):
    await _trained_model(ledger.db_path)
    await insert_job(ledger.db_path, "img_1", kind=JobKind.IMAGE, cost=1)

    models = await gateway.list_models("user_1")
    assert [m.id for m in models] == ["mdl_ready"]
