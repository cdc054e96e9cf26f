"""Validated, atomically persisted streaming configuration.

``ConfigStore.apply`` checks a candidate configuration in a fixed order and
commits every field or none of them. Address resolution suspends in the middle
of validation, so all checks run against a local draft and the shared config
is swapped in one synchronous step at the end.

Concurrent applies are ordered by ticket: an apply that finishes after a newer
one has already committed is discarded with ``StaleConfigError`` rather than
overwriting the newer state.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from .json_store import JsonDocument, PersistenceError
from .pipelines import Pipeline, PipelineCatalog

DELAY_MIN_MS = -2000
DELAY_MAX_MS = 2000
BITRATE_MIN_KBPS = 500
BITRATE_MAX_KBPS = 12000
SRT_LATENCY_MIN_MS = 100
SRT_LATENCY_MAX_MS = 10000
PORT_MAX = 0xFFFF

CONFIG_FIELDS = (
    "delay",
    "pipeline",
    "min_br",
    "max_br",
    "srt_latency",
    "srt_streamid",
    "srtla_addr",
    "srtla_port",
)

Resolver = Callable[[str], Awaitable[Any]]


class ValidationError(Exception):
    """A configuration field is missing or out of range."""


class ResolutionError(ValidationError):
    """The SRTLA address did not resolve."""


class StaleConfigError(ValidationError):
    """A newer configuration was committed while this one was validating."""


@dataclass(frozen=True, slots=True)
class StreamConfig:
    delay: int | float | None = None
    pipeline: str | None = None
    min_br: int | float | None = None
    max_br: int | float | None = None
    srt_latency: int | float | None = None
    srt_streamid: str | None = None
    srtla_addr: str | None = None
    srtla_port: int | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "StreamConfig":
        return cls(**{key: raw.get(key) for key in CONFIG_FIELDS})

    def to_payload(self) -> dict[str, Any]:
        """Fields that have a value, as sent to clients and written to disk."""

        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True, slots=True)
class AppliedConfig:
    config: StreamConfig
    pipeline: Pipeline


async def resolve_host(host: str) -> Any:
    loop = asyncio.get_running_loop()
    try:
        return await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, OSError) as exc:
        raise ResolutionError(f"failed to resolve SRTLA addr {host}") from exc


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _in_range(value: Any, lower: float, upper: float) -> bool:
    return _is_number(value) and lower <= value <= upper


def validate_bitrate(params: Mapping[str, Any]) -> tuple[Any, Any]:
    min_br = params.get("min_br")
    max_br = params.get("max_br")
    if min_br is None or max_br is None:
        raise ValidationError("invalid bitrate range")
    if not _in_range(min_br, BITRATE_MIN_KBPS, BITRATE_MAX_KBPS):
        raise ValidationError("invalid bitrate range")
    if not _in_range(max_br, BITRATE_MIN_KBPS, BITRATE_MAX_KBPS):
        raise ValidationError("invalid bitrate range")
    if min_br > max_br:
        raise ValidationError("invalid bitrate range")
    return min_br, max_br


class ConfigStore:
    def __init__(
        self,
        document: JsonDocument,
        pipelines: PipelineCatalog,
        *,
        bitrate_file: str | os.PathLike[str] | None = None,
        resolver: Resolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._document = document
        self._pipelines = pipelines
        self._bitrate_file = Path(bitrate_file) if bitrate_file else None
        self._resolver = resolver or resolve_host
        self._logger = logger or logging.getLogger("castdeck.config_store")
        self._config = StreamConfig.from_mapping(document.snapshot())
        self._issued_ticket = 0
        self._committed_ticket = 0

    @property
    def current(self) -> StreamConfig:
        return self._config

    def snapshot(self) -> dict[str, Any]:
        return self._config.to_payload()

    async def apply(self, candidate: Mapping[str, Any]) -> AppliedConfig:
        if not isinstance(candidate, Mapping):
            raise ValidationError("audio delay not specified")
        self._issued_ticket += 1
        ticket = self._issued_ticket

        draft, pipeline = self._validate_local(candidate)
        # suspends; other applies may run and commit meanwhile
        await self._resolver(draft.srtla_addr)

        if ticket < self._committed_ticket:
            self._logger.info(
                "Discarding configuration #%d; #%d was committed first",
                ticket,
                self._committed_ticket,
            )
            raise StaleConfigError("configuration superseded by a newer request")

        self._commit(draft)
        self._committed_ticket = ticket
        self._logger.info(
            "Applied configuration #%d (pipeline %s, %s-%s kbps, %s:%s)",
            ticket,
            pipeline.name,
            draft.min_br,
            draft.max_br,
            draft.srtla_addr,
            draft.srtla_port,
        )
        return AppliedConfig(draft, pipeline)

    def _validate_local(self, params: Mapping[str, Any]) -> tuple[StreamConfig, Pipeline]:
        delay = params.get("delay")
        if delay is None:
            raise ValidationError("audio delay not specified")
        if not _in_range(delay, DELAY_MIN_MS, DELAY_MAX_MS):
            raise ValidationError(f"invalid delay {delay}")

        pipeline_ref = params.get("pipeline")
        if pipeline_ref is None:
            raise ValidationError("pipeline not specified")
        pipeline = self._pipelines.lookup(pipeline_ref)
        if pipeline is None:
            raise ValidationError("pipeline not found")

        min_br, max_br = validate_bitrate(params)

        srt_latency = params.get("srt_latency")
        if srt_latency is None:
            raise ValidationError("SRT latency not specified")
        if not _in_range(srt_latency, SRT_LATENCY_MIN_MS, SRT_LATENCY_MAX_MS):
            raise ValidationError(f"invalid SRT latency {srt_latency} ms")

        srt_streamid = params.get("srt_streamid")
        if not isinstance(srt_streamid, str):
            raise ValidationError("SRT streamid not specified")

        srtla_addr = params.get("srtla_addr")
        if not isinstance(srtla_addr, str) or not srtla_addr.strip():
            raise ValidationError("SRTLA address not specified")
        srtla_port = params.get("srtla_port")
        if srtla_port is None:
            raise ValidationError("SRTLA port not specified")
        if (
            not isinstance(srtla_port, int)
            or isinstance(srtla_port, bool)
            or srtla_port <= 0
            or srtla_port > PORT_MAX
        ):
            raise ValidationError(f"invalid SRTLA port {srtla_port}")

        draft = StreamConfig(
            delay=delay,
            pipeline=pipeline.id,
            min_br=min_br,
            max_br=max_br,
            srt_latency=srt_latency,
            srt_streamid=srt_streamid,
            srtla_addr=srtla_addr.strip(),
            srtla_port=srtla_port,
        )
        return draft, pipeline

    def _commit(self, config: StreamConfig) -> None:
        # Persist first; memory only changes once the document is on disk.
        self._document.update(config.to_payload())
        self._config = config

    def apply_bitrate_only(self, params: Mapping[str, Any]) -> tuple[Any, Any]:
        """Update just the bitrate pair of a running stream.

        Writes the sentinel file read by the encoder on reload; signalling the
        encoder is left to the caller.
        """

        if not isinstance(params, Mapping):
            raise ValidationError("invalid bitrate range")
        min_br, max_br = validate_bitrate(params)
        fields = self._config.to_payload()
        fields.update(min_br=min_br, max_br=max_br)
        self._commit(StreamConfig.from_mapping(fields))
        self._write_bitrate_file(min_br, max_br)
        self._logger.info("Bitrate set to %s-%s kbps", min_br, max_br)
        return min_br, max_br

    def _write_bitrate_file(self, min_br: Any, max_br: Any) -> None:
        if self._bitrate_file is None:
            self._logger.warning("Device setup has no bitrate_file; encoder not notified of new rates")
            return
        contents = f"{int(min_br * 1000)}\n{int(max_br * 1000)}\n"
        try:
            self._bitrate_file.write_text(contents, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Unable to write {self._bitrate_file}: {exc}") from exc


__all__ = [
    "AppliedConfig",
    "ConfigStore",
    "ResolutionError",
    "StaleConfigError",
    "StreamConfig",
    "ValidationError",
    "resolve_host",
    "validate_bitrate",
]
