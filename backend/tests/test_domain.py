"""Tests for the ClaimedJob -> DomainJob projection."""

from __future__ import annotations

import pytest

from rowqueue.db.models import JobStatus
from rowqueue.domain import ClaimedJob, DomainJob, batch_label, convert_batch, to_domain_job
from rowqueue.errors import RangeError
from rowqueue.schemas.payloads import FollowUpParams, NoopPayload, SendEmailPayload


def _job(job_id: int, payload=None, params=None) -> ClaimedJob:
    return ClaimedJob(
        id=job_id,
        status=JobStatus.RUNNING,
        payload=payload or NoopPayload(),
        params=params,
    )


class TestBatchLabel:
    @pytest.mark.parametrize(
        "job_id,label",
        [(0, "BATCH(0)"), (1, "BATCH(0)"), (2, "BATCH(0)"), (3, "BATCH(1)"), (7, "BATCH(2)"), (20, "BATCH(6)")],
    )
    def test_groups_of_three(self, job_id, label):
        assert batch_label(job_id) == label


class TestToDomainJob:
    def test_carries_status_payload_params(self):
        payload = SendEmailPayload(email="user@example.com")
        params = FollowUpParams(value=True)
        domain = to_domain_job(_job(7, payload, params))
        assert domain == DomainJob(
            identifier="BATCH(2)",
            status=JobStatus.RUNNING,
            payload=payload,
            params=params,
        )

    def test_absent_params_stay_absent(self):
        assert to_domain_job(_job(4)).params is None

    def test_id_at_maximum_accepted(self):
        assert to_domain_job(_job(2**32 - 1)).identifier == f"BATCH({(2**32 - 1) // 3})"

    def test_id_above_maximum_rejected(self):
        with pytest.raises(RangeError) as exc_info:
            to_domain_job(_job(2**32))
        assert exc_info.value.job_id == 2**32

    def test_negative_id_rejected(self):
        with pytest.raises(RangeError):
            to_domain_job(_job(-1))

    def test_explicit_maximum(self):
        with pytest.raises(RangeError):
            to_domain_job(_job(11), id_max=10)
        assert to_domain_job(_job(10), id_max=10).identifier == "BATCH(3)"


class TestConvertBatch:
    def test_partial_success(self):
        jobs = [_job(1), _job(2**32 + 5), _job(3), _job(2**40)]
        result = convert_batch(jobs)
        assert [d.identifier for d in result.converted] == ["BATCH(0)", "BATCH(1)"]
        assert result.rejected_ids == [2**32 + 5, 2**40]

    def test_preserves_order(self):
        result = convert_batch([_job(i) for i in (1, 2, 3, 4, 5)])
        assert [d.identifier for d in result.converted] == [
            "BATCH(0)", "BATCH(0)", "BATCH(1)", "BATCH(1)", "BATCH(1)",
        ]
        assert result.rejected_ids == []

    def test_empty_batch(self):
        result = convert_batch([])
        assert result.converted == []
        assert result.rejected_ids == []

    def test_uses_configured_maximum(self, monkeypatch):
        from rowqueue.config import settings

        monkeypatch.setattr(settings, "DOMAIN_ID_MAX", 3)
        result = convert_batch([_job(i) for i in range(1, 6)])
        assert len(result.converted) == 3
        assert result.rejected_ids == [4, 5]
