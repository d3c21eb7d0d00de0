"""Shared queue contract and its Redis implementation."""

from __future__ import annotations

import logging
from typing import Protocol

import redis

from taxonomy_worker.jobs.models import JobField, QueueError

logger = logging.getLogger(__name__)

JOB_COUNTER_KEY = "jobs"


def job_key(token: str, job_field: JobField | str) -> str:
    name = job_field.value if isinstance(job_field, JobField) else job_field
    return f"jobs:{token}:{name}"


class JobQueue(Protocol):
    """Ordered key-value store shared by producers and workers."""

    def pop(self, list_name: str) -> str | None:
        """Destructively pop one token, or return None when the list is empty."""

    def push(self, list_name: str, token: str) -> None:
        """Push a token onto a named list."""

    def set_field(self, token: str, job_field: JobField, value: str | int | float) -> None:
        """Write one scalar field of the job record."""

    def get_field(self, token: str, job_field: JobField) -> str | None:
        """Read one scalar field of the job record."""

    def allocate_token(self) -> str:
        """Allocate the next job token."""


class RedisJobQueue:
    """Job queue backed by Redis lists and string keys.

    Producers ``LPUSH`` tokens and workers ``RPOP`` them, so the work list is
    consumed in FIFO order. ``RPOP`` is atomic: a token is handed to exactly
    one worker, and nothing redelivers it afterwards.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisJobQueue:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def ping(self) -> None:
        try:
            self._client.ping()
        except redis.RedisError as error:
            raise QueueError(f"Could not connect to redis: {error}") from error

    def pop(self, list_name: str) -> str | None:
        try:
            value = self._client.rpop(list_name)
        except redis.RedisError as error:
            raise QueueError(f"Could not pop from redis queue {list_name!r}: {error}") from error
        if value is None:
            return None
        return _text(value)

    def push(self, list_name: str, token: str) -> None:
        try:
            self._client.lpush(list_name, token)
        except redis.RedisError as error:
            raise QueueError(f"Could not push to redis queue {list_name!r}: {error}") from error

    def set_field(self, token: str, job_field: JobField, value: str | int | float) -> None:
        try:
            self._client.set(job_key(token, job_field), value)
        except redis.RedisError as error:
            raise QueueError(
                f"Could not set {job_field.value} for job {token} in redis: {error}",
            ) from error

    def get_field(self, token: str, job_field: JobField) -> str | None:
        try:
            value = self._client.get(job_key(token, job_field))
        except redis.RedisError as error:
            raise QueueError(
                f"Could not get {job_field.value} for job {token} from redis: {error}",
            ) from error
        if value is None:
            return None
        return _text(value)

    def allocate_token(self) -> str:
        try:
            return str(self._client.incr(JOB_COUNTER_KEY))
        except redis.RedisError as error:
            raise QueueError(f"Could not allocate job number: {error}") from error

    def close(self) -> None:
        self._client.close()


def _text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
