"""Claimed-job records and their handler-facing DomainJob projection.

``to_domain_job`` is pure: it never touches the store.  A job whose id does
not fit the domain identifier range raises ``RangeError``; ``convert_batch``
collects those ids instead of raising so the rest of a batch still converts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from rowqueue.config import settings
from rowqueue.db.models import JobStatus
from rowqueue.errors import RangeError
from rowqueue.schemas.payloads import FollowUpParams, NoopParams, NoopPayload, SendEmailPayload

logger = logging.getLogger("rowqueue.domain")

# Consecutive ids that share one batch label.
BATCH_GROUP_SIZE = 3


@dataclass(frozen=True)
class ClaimedJob:
    """A job row as returned by the claim protocol, payload/params decoded."""

    id: int
    status: JobStatus
    payload: NoopPayload | SendEmailPayload
    params: NoopParams | FollowUpParams | None = None


@dataclass(frozen=True)
class DomainJob:
    identifier: str
    status: JobStatus
    payload: NoopPayload | SendEmailPayload
    params: NoopParams | FollowUpParams | None = None


@dataclass
class ConversionResult:
    converted: list[DomainJob] = field(default_factory=list)
    rejected_ids: list[int] = field(default_factory=list)


def batch_label(narrow_id: int) -> str:
    return f"BATCH({narrow_id // BATCH_GROUP_SIZE})"


def to_domain_job(job: ClaimedJob, *, id_max: int | None = None) -> DomainJob:
    """Narrow *job* into a DomainJob or raise ``RangeError``."""
    maximum = settings.DOMAIN_ID_MAX if id_max is None else id_max
    if job.id < 0 or job.id > maximum:
        raise RangeError(job.id, maximum)
    return DomainJob(
        identifier=batch_label(job.id),
        status=job.status,
        payload=job.payload,
        params=job.params,
    )


def convert_batch(jobs: Iterable[ClaimedJob], *, id_max: int | None = None) -> ConversionResult:
    result = ConversionResult()
    for job in jobs:
        try:
            result.converted.append(to_domain_job(job, id_max=id_max))
        except RangeError as err:
            logger.warning("Excluding job %s from domain batch: %s", job.id, err)
            result.rejected_ids.append(job.id)
    return result
