"""Reports: parameter resolution, query, shaping, export and delivery as a workflow.

A report is registered as a :class:`ReportSpec`; :func:`build_report_workflow`
turns it into a definition whose stages are ordinary steps, so retries,
timeouts and cancellation apply to reports like to any workflow. The query
stage goes through :class:`~flowline.cache.ResultCache`.
"""

from __future__ import annotations

import csv
import hashlib
import inspect
import io
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Tuple, Union

from pydantic import Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .contracts import DefinitionGraph, StepOutcome, WireModel
from .errors import FatalError, NotFound, ValidationError
from .handlers import HandlerRegistry, StepContext
from .models import ExportArtifact
from .persistence.repository import Repository
from .runtime import VARIABLE_TYPES, matches_type

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "ndjson": "application/x-ndjson",
}


class ReportParameter(WireModel):
    name: str
    type: str = "string"
    default: Any = None
    required: bool = False
    description: Optional[str] = None


class ReportDelivery(WireModel):
    adapter: str
    target: Dict[str, Any] = Field(default_factory=dict)


class ReportSpec(WireModel):
    """A parameterised query plus how to shape, export and deliver its rows."""

    id: str
    name: str
    version: str = "1"
    source: str = "default"
    query: str = ""
    parameters: List[ReportParameter] = Field(default_factory=list)
    cache_ttl_seconds: Optional[int] = Field(default=None, ge=0)
    format: Literal["json", "csv", "ndjson"] = "json"
    columns: Optional[List[str]] = None
    sort_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = Field(default=None, gt=0)
    delivery: Optional[ReportDelivery] = None
    description: Optional[str] = None

    @property
    def definition_name(self) -> str:
        return f"report:{self.id}"


# ---------------------------------------------------------------------------
# Query sources
# ---------------------------------------------------------------------------


class QuerySource(Protocol):
    async def fetch(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Run ``query`` with bound ``params`` and return rows as dicts."""


class CallableQuerySource:
    """Wraps a plain (sync or async) function ``fn(query, params) -> rows``."""

    def __init__(
        self,
        fn: Callable[[str, Dict[str, Any]], Union[List[Dict[str, Any]], Awaitable[List[Dict[str, Any]]]]],
    ) -> None:
        self._fn = fn
        self.calls = 0

    async def fetch(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.calls += 1
        result = self._fn(query, params)
        if inspect.isawaitable(result):
            result = await result
        return [dict(row) for row in result]


_READ_ONLY = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


class SQLQuerySource:
    """Runs read-only SQL through SQLAlchemy's async engine with bound parameters."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None) -> None:
        if engine is None and database_url is None:
            raise ValueError("SQLQuerySource needs a database_url or an engine")
        self.engine = engine or create_async_engine(database_url)

    @staticmethod
    def check_query(query: str) -> None:
        body = query.strip().rstrip(";")
        if not _READ_ONLY.match(body) or ";" in body:
            raise ValidationError("Report queries must be a single SELECT statement")

    async def fetch(self, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self.check_query(query)
        async with self.engine.connect() as conn:
            result = await conn.execute(text(query), params)
            return [dict(row._mapping) for row in result]

    async def close(self) -> None:
        await self.engine.dispose()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ReportRegistry:
    """Known report specs and the query sources they run against."""

    def __init__(self) -> None:
        self._reports: Dict[str, ReportSpec] = {}
        self._sources: Dict[str, QuerySource] = {}

    def register_report(self, spec: ReportSpec) -> ReportSpec:
        for parameter in spec.parameters:
            if parameter.type not in VARIABLE_TYPES:
                raise ValidationError(
                    f"Report {spec.id} has invalid parameter type",
                    [f"parameter {parameter.name!r}: unknown type {parameter.type!r}"],
                )
        self._reports[spec.id] = spec
        return spec

    def get(self, report_id: str) -> ReportSpec:
        try:
            return self._reports[report_id]
        except KeyError:
            raise NotFound(f"Report {report_id} not found") from None

    def reports(self) -> List[ReportSpec]:
        return list(self._reports.values())

    def register_source(self, name: str, source: QuerySource) -> None:
        self._sources[name] = source

    def source(self, name: str) -> QuerySource:
        try:
            return self._sources[name]
        except KeyError:
            raise FatalError(f"No query source named {name!r}") from None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def resolve_parameters(spec: ReportSpec, supplied: Dict[str, Any]) -> Dict[str, Any]:
    """Apply defaults and check required parameters and types."""

    known = {p.name for p in spec.parameters}
    problems = [f"unknown parameter {name!r}" for name in supplied if name not in known]
    resolved: Dict[str, Any] = {}
    for parameter in spec.parameters:
        if parameter.name in supplied:
            value = supplied[parameter.name]
        elif parameter.default is not None:
            value = parameter.default
        elif parameter.required:
            problems.append(f"parameter {parameter.name!r} is required")
            continue
        else:
            value = None
        if not matches_type(value, parameter.type):
            problems.append(f"parameter {parameter.name!r} must be of type {parameter.type}")
            continue
        resolved[parameter.name] = value
    if problems:
        raise ValidationError(f"Invalid parameters for report {spec.id}", problems)
    return resolved


def parameter_fingerprint(report_id: str, parameters: Dict[str, Any], version: str) -> str:
    """Stable hash of report id, resolved parameters and report version."""

    canonical = json.dumps(
        [report_id, parameters, version], sort_keys=True, separators=(",", ":"), default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def shape_rows(
    rows: List[Dict[str, Any]],
    columns: Optional[List[str]] = None,
    sort_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    shaped = list(rows)
    if sort_by:
        # rows missing the key sort last
        shaped.sort(
            key=lambda row: (row.get(sort_by) is None, row.get(sort_by)), reverse=descending
        )
    if columns:
        shaped = [{column: row.get(column) for column in columns} for row in shaped]
    if limit is not None:
        shaped = shaped[:limit]
    return shaped


def export_rows(rows: List[Dict[str, Any]], fmt: str) -> Tuple[str, str]:
    """Render rows; returns ``(content, content_type)``."""

    if fmt == "json":
        content = json.dumps(rows, sort_keys=True, default=str)
    elif fmt == "ndjson":
        content = "".join(json.dumps(row, sort_keys=True, default=str) + "\n" for row in rows)
    elif fmt == "csv":
        fieldnames: List[str] = []
        for row in rows:
            fieldnames.extend(key for key in row if key not in fieldnames)
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)
        content = buffer.getvalue()
    else:
        raise ValidationError(f"Unsupported export format {fmt!r}")
    return content, CONTENT_TYPES[fmt]


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


def build_report_workflow(spec: ReportSpec) -> DefinitionGraph:
    """Definition ``resolve -> query -> shape -> export -> deliver`` for ``spec``."""

    delivery = spec.delivery or ReportDelivery(adapter="none")
    return DefinitionGraph.model_validate(
        {
            "version": "1",
            "steps": [
                {"id": "resolve", "kind": "task", "config": {"handler": "report.resolve", "reportId": spec.id}},
                {"id": "query", "kind": "task", "config": {"handler": "report.query"}},
                {"id": "shape", "kind": "task", "config": {"handler": "report.shape"}},
                {"id": "export", "kind": "task", "config": {"handler": "report.export"}},
                {
                    "id": "deliver",
                    "kind": "delivery",
                    "config": {
                        "adapter": delivery.adapter,
                        "target": delivery.target,
                        "payload": {
                            "reportId": "${reportId}",
                            "reportName": spec.name,
                            "format": "${format}",
                            "artifactRef": "${artifactRef}",
                            "contentType": "${contentType}",
                            "rowCount": "${rowCount}",
                            "content": "${content}",
                        },
                    },
                },
            ],
            "connections": [
                {"from": "resolve", "to": "query"},
                {"from": "query", "to": "shape"},
                {"from": "shape", "to": "export"},
                {"from": "export", "to": "deliver"},
            ],
            "variables": {"parameters": {"type": "object", "scope": "instance", "default": {}}},
            "settings": {
                "output": ["reportId", "fingerprint", "format", "artifactRef", "rowCount", "cacheHit"],
            },
        }
    )


def install_report_tasks(handlers: HandlerRegistry, reports: ReportRegistry) -> None:
    """Register the ``report.*`` task handlers used by report workflows."""

    @handlers.task("report.resolve")
    async def resolve(ctx: StepContext) -> Dict[str, Any]:
        spec = reports.get(ctx.config["reportId"])
        parameters = resolve_parameters(spec, ctx.input.get("parameters") or {})
        return {
            "reportId": spec.id,
            "reportVersion": spec.version,
            "parameters": parameters,
            "fingerprint": parameter_fingerprint(spec.id, parameters, spec.version),
            "format": spec.format,
        }

    @handlers.task("report.query")
    async def query(ctx: StepContext) -> StepOutcome:
        spec = reports.get(ctx.input["reportId"])
        parameters = ctx.input.get("parameters") or {}
        source = reports.source(spec.source)

        async def compute() -> List[Dict[str, Any]]:
            logger.info(f"Running query for report {spec.id} ({ctx.input['fingerprint'][:12]})")
            return await source.fetch(spec.query, parameters)

        rows, hit = await ctx.services["cache"].get_or_compute(
            spec.id,
            ctx.input["fingerprint"],
            compute,
            ttl_s=spec.cache_ttl_seconds,
            producer=f"{ctx.instance_id}/{ctx.step_id}",
        )
        return StepOutcome(output={"rows": rows, "rowCount": len(rows), "cacheHit": hit}, cache_hit=hit)

    @handlers.task("report.shape")
    async def shape(ctx: StepContext) -> Dict[str, Any]:
        spec = reports.get(ctx.input["reportId"])
        rows = shape_rows(
            ctx.input.get("rows") or [],
            columns=spec.columns,
            sort_by=spec.sort_by,
            descending=spec.descending,
            limit=spec.limit,
        )
        return {"rows": rows, "rowCount": len(rows)}

    @handlers.task("report.export")
    async def export(ctx: StepContext) -> Dict[str, Any]:
        fmt = ctx.input.get("format", "json")
        content, content_type = export_rows(ctx.input.get("rows") or [], fmt)
        checksum = hashlib.sha256(content.encode("utf-8")).hexdigest()
        ref = f"{ctx.input['reportId']}/{ctx.instance_id}.{fmt}"
        artifact = ExportArtifact(
            ref=ref,
            report_id=ctx.input["reportId"],
            format=fmt,
            content_type=content_type,
            content=content,
            size=len(content.encode("utf-8")),
            checksum=checksum,
            created_at=ctx.clock.now_ms(),
        )
        async with ctx.services["store"].transaction() as tx:
            repo = Repository(tx)
            existing = await repo.get_artifact(ref)
            if existing is not None:
                # a retried export overwrites its own artifact
                artifact.row_version = existing.row_version
            await repo.save_artifact(artifact)
        return {
            "artifactRef": ref,
            "contentType": content_type,
            "size": artifact.size,
            "checksum": checksum,
            "content": content,
        }
