"""Production-readiness suite: configuration, data layer, transport security and abuse resistance."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
import psycopg

from invoicecheck.client import InvoiceApiClient, json_or_none
from invoicecheck.harness.models import ProbeCase, ProbeResult, ProbeSuite, RunConfig
from invoicecheck.suites.common import (
    is_rejection,
    mock_client,
    neutralized,
    probe,
    ratio,
    stored_inertly,
    unique_suffix,
)

logger = logging.getLogger(__name__)

SUITE_NAME = "production-readiness"

# (variable, critical)
REQUIRED_ENV_VARS: Sequence[Tuple[str, bool]] = (
    ("NEXT_PUBLIC_SUPABASE_URL", True),
    ("NEXT_PUBLIC_SUPABASE_ANON_KEY", True),
    ("SUPABASE_SERVICE_ROLE_KEY", True),
    ("NEXT_PUBLIC_APP_URL", False),
    ("NEXT_PUBLIC_VERCEL_URL", False),
    ("DATABASE_URL", True),
    ("EMAIL_FROM", False),
    ("RESEND_API_KEY", False),
)

STATIC_ASSETS: Sequence[str] = (
    "/favicon.ico",
    "/manifest.json",
    "/_next/static/css/app.css",
    "/_next/static/chunks/webpack.js",
    "/sw.js",
)

# (name, payload, field)
HOSTILE_INPUTS: Sequence[Tuple[str, str, str]] = (
    ("XSS Script Tag", '<script>alert("xss")</script>', "name"),
    ("SQL Injection", "'; DROP TABLE clients; --", "name"),
    ("HTML Injection", "<img src=\"x\" onerror=\"alert('xss')\">", "name"),
    ("NoSQL Injection", '{"$ne": null}', "email"),
)

VALID_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/PchI7wAAAABJRU5ErkJggg=="
)

# (name, filename, content type, should reject)
UPLOAD_SECURITY_CASES: Sequence[Tuple[str, str, str, bool]] = (
    ("Executable File", "malware.exe", "application/x-msdownload", True),
    ("Script File", "script.js", "application/javascript", True),
    ("PHP File", "backdoor.php", "application/x-httpd-php", True),
    ("Large File", "huge.txt", "text/plain", True),
    ("Valid Image", "test.png", "image/png", False),
)

LARGE_UPLOAD_BYTES = 20 * 1024 * 1024
RATE_LIMIT_BURST = 20


def mask_secret(value: Optional[str]) -> str:
    return f"{value[:8]}..." if value else "MISSING"


def _upload_body(filename: str) -> bytes:
    if filename == "malware.exe":
        return b"MZ\x90\x00"
    if filename == "script.js":
        return b'alert("xss")'
    if filename == "backdoor.php":
        return b'<?php system($_GET["cmd"]); ?>'
    if filename == "test.png":
        return VALID_PNG
    return b"a" * LARGE_UPLOAD_BYTES


@dataclass(frozen=True)
class ProductionCheck:
    name: str
    run: Callable[[], Awaitable[ProbeResult]]
    critical: bool
    description: str


class ProductionProbes:
    def __init__(
        self,
        config: RunConfig,
        client: InvoiceApiClient,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.environ = os.environ if environ is None else environ

    @probe("Environment variable validation")
    async def environment_variables(self) -> ProbeResult:
        results = []
        for name, critical in REQUIRED_ENV_VARS:
            value = self.environ.get(name)
            results.append({"variable": name, "exists": bool(value), "critical": critical, "masked": mask_secret(value)})

        critical_missing = [result["variable"] for result in results if result["critical"] and not result["exists"]]
        missing = [result["variable"] for result in results if not result["exists"]]
        return ProbeResult(
            success=not critical_missing,
            message=(
                f"Environment variables: {len(results) - len(missing)}/{len(results)} set, "
                f"{len(critical_missing)} critical missing"
            ),
            data={"results": results, "criticalMissing": critical_missing, "allMissing": missing},
        )

    async def _status_check(self, path: str, *, api: bool = True) -> Tuple[bool, int]:
        response = await self.client.get(path, api=api)
        return response.status_code < 500, response.status_code

    async def _write_check(self) -> Tuple[bool, int]:
        suffix = unique_suffix()
        response = await self.client.post(
            "/clients", json={"name": f"DB Test {suffix}", "email": f"dbtest-{suffix}@example.com"}
        )
        if response.is_success:
            body = json_or_none(response)
            if isinstance(body, dict):
                await self.client.discard("clients", body.get("id"))
        return response.is_success, response.status_code

    async def _direct_database_check(self, database_url: str) -> Tuple[bool, int]:
        try:
            async with await psycopg.AsyncConnection.connect(database_url, connect_timeout=5) as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    await cur.fetchone()
        except (psycopg.Error, OSError) as exc:
            logger.warning("Direct database check failed: %s", exc)
            return False, -1
        return True, 0

    @probe("Database connection test")
    async def database_connections(self) -> ProbeResult:
        checks: List[Tuple[str, bool, Callable[[], Awaitable[Tuple[bool, int]]]]] = [
            ("Supabase Connection", True, lambda: self._status_check("/user/credits")),
            ("Database Read", True, lambda: self._status_check("/clients")),
            ("Database Write", True, self._write_check),
            ("Authentication System", False, lambda: self._status_check("/auth/callback", api=False)),
        ]
        database_url = self.environ.get("DATABASE_URL")
        if database_url:
            checks.append(("Direct Database", False, lambda: self._direct_database_check(database_url)))

        results: List[Dict[str, Any]] = []
        for name, critical, check in checks:
            try:
                ok, status = await check()
                message = "Connected" if ok else f"Connection failed ({status})"
            except httpx.HTTPError as exc:
                ok, status, message = False, -1, str(exc)
            results.append({"connection": name, "critical": critical, "success": ok, "status": status, "message": message})

        successful = len([result for result in results if result["success"]])
        critical = [result for result in results if result["critical"]]
        critical_ok = len([result for result in critical if result["success"]])
        return ProbeResult(
            success=critical_ok == len(critical),
            message=(
                f"Database connections: {successful}/{len(results)} successful, "
                f"{critical_ok}/{len(critical)} critical"
            ),
            data={"results": results, "criticalConnections": len(critical)},
        )

    @probe("SSL certificate validation")
    async def https_enforcement(self) -> ProbeResult:
        base_url = self.config.base_url
        uses_https = base_url.startswith("https://")
        https_url = base_url.replace("http://", "https://", 1)
        try:
            response = await self.client.http.head(https_url)
            responds, status = response.status_code < 500, response.status_code
        except httpx.HTTPError as exc:
            logger.debug("HTTPS HEAD %s failed: %s", https_url, exc)
            responds, status = False, -1

        return ProbeResult(
            success=uses_https and responds,
            message=(
                f"SSL/HTTPS: base URL {'uses' if uses_https else 'does not use'} HTTPS, "
                f"HTTPS endpoint {'responding' if responds else 'not responding'}"
            ),
            data={"endpoint": https_url, "hasSSL": uses_https, "responds": responds, "status": status},
        )

    @probe("Static assets test")
    async def static_assets(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for asset in STATIC_ASSETS:
            try:
                response = await self.client.request("HEAD", asset, api=False, headers={"Cache-Control": "no-cache"})
            except httpx.HTTPError as exc:
                results.append({"asset": asset, "available": False, "status": -1, "cached": False, "error": str(exc)})
                continue
            results.append(
                {
                    "asset": asset,
                    "available": response.is_success,
                    "status": response.status_code,
                    "cached": "cache-control" in response.headers,
                    "size": response.headers.get("content-length", "unknown"),
                }
            )

        available = len([result for result in results if result["available"]])
        cached = len([result for result in results if result["cached"]])
        return ProbeResult(
            success=available >= len(STATIC_ASSETS) * 0.7,
            message=f"Static assets: {available}/{len(STATIC_ASSETS)} available, {cached} with cache headers",
            data={"results": results},
        )

    async def _sanitization_case(self, name: str, payload: str, field: str) -> Dict[str, Any]:
        body = {"name": "Sanitization Test", "email": f"sanitize-{unique_suffix()}@example.com", field: payload}
        response = await self.client.post("/clients", json=body)
        if not response.is_success:
            safe = is_rejection(response)
            return {"test": name, "payload": payload, "status": response.status_code, "retrievedValue": "REJECTED", "safe": safe}

        record = json_or_none(response) or {}
        record_id = record.get("id") if isinstance(record, dict) else None
        try:
            detail = await self.client.get(f"/clients/{record_id}") if record_id else response
            stored = (json_or_none(detail) or {}).get(field)
            safe = stored_inertly(payload, stored, detail.headers.get("content-type", "")) or neutralized(payload, stored)
        finally:
            await self.client.discard("clients", record_id)
        return {"test": name, "payload": payload, "status": response.status_code, "retrievedValue": stored, "safe": safe}

    @probe("Input sanitization validation")
    async def input_sanitization(self) -> ProbeResult:
        results = [await self._sanitization_case(*hostile) for hostile in HOSTILE_INPUTS]
        safe = len([result for result in results if result["safe"]])
        return ProbeResult(
            success=safe == len(HOSTILE_INPUTS),
            message=f"Input sanitization: {safe}/{len(HOSTILE_INPUTS)} malicious inputs safely handled",
            data={"results": results, "securityScore": ratio(safe, len(HOSTILE_INPUTS))},
        )

    async def _burst_request(self, index: int) -> int:
        try:
            response = await self.client.get("/clients", headers={"X-Test-Request": f"rate-limit-test-{index}"})
        except httpx.HTTPError:
            return -1
        return response.status_code

    @probe("Rate limiting test")
    async def rate_limiting(self) -> ProbeResult:
        start = time.perf_counter()
        statuses = await asyncio.gather(*(self._burst_request(index) for index in range(RATE_LIMIT_BURST)))
        total_ms = int(round((time.perf_counter() - start) * 1000))

        limited = statuses.count(429)
        successful = statuses.count(200)
        errors = len([status for status in statuses if status >= 500 or status == -1])
        stable = errors < RATE_LIMIT_BURST * 0.2
        return ProbeResult(
            success=stable,
            message=(
                f"Rate limiting: {limited} requests limited, {successful} successful, "
                f"{errors} errors in {total_ms}ms"
            ),
            data={
                "totalRequests": RATE_LIMIT_BURST,
                "rateLimited": limited,
                "successful": successful,
                "errors": errors,
                "hasRateLimiting": limited > 0 or successful < RATE_LIMIT_BURST * 0.8,
                "systemStable": stable,
                "averageResponseTime": total_ms / RATE_LIMIT_BURST,
            },
        )

    @probe("File upload security validation")
    async def upload_security(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for name, filename, content_type, should_reject in UPLOAD_SECURITY_CASES:
            try:
                response = await self.client.upload("/upload/avatar", filename, _upload_body(filename), content_type)
                rejected = not response.is_success
                correct = is_rejection(response) if should_reject else response.is_success
                status = response.status_code
            except httpx.HTTPError as exc:
                logger.debug("Upload of %s failed at transport level: %s", filename, exc)
                rejected, correct, status = True, should_reject, -1
            results.append(
                {
                    "test": name,
                    "filename": filename,
                    "shouldReject": should_reject,
                    "wasRejected": rejected,
                    "correct": correct,
                    "status": status,
                }
            )

        correct_count = len([result for result in results if result["correct"]])
        violations = len([result for result in results if result["shouldReject"] and not result["correct"]])
        return ProbeResult(
            success=violations == 0,
            message=(
                f"File upload security: {correct_count}/{len(results)} correctly handled, "
                f"{violations} security violations"
            ),
            data={"results": results, "securityScore": ratio(correct_count, len(results)), "violations": violations},
        )

    def checks(self) -> List[ProductionCheck]:
        return [
            ProductionCheck(
                "Environment Variables",
                self.environment_variables,
                True,
                "All critical environment variables are properly configured",
            ),
            ProductionCheck(
                "Database Connectivity", self.database_connections, True, "Database connections are working properly"
            ),
            ProductionCheck(
                "SSL/HTTPS Configuration", self.https_enforcement, True, "SSL certificates are valid and HTTPS is enforced"
            ),
            ProductionCheck(
                "Static Asset Delivery", self.static_assets, False, "Static assets are properly served and cached"
            ),
            ProductionCheck(
                "Input Sanitization",
                self.input_sanitization,
                True,
                "User inputs are properly sanitized against XSS and injection attacks",
            ),
            ProductionCheck(
                "Rate Limiting", self.rate_limiting, False, "API rate limiting is configured to prevent abuse"
            ),
            ProductionCheck(
                "File Upload Security", self.upload_security, True, "File uploads are properly validated and secured"
            ),
        ]

    @probe("Production readiness check")
    async def comprehensive(self) -> ProbeResult:
        results: List[Dict[str, Any]] = []
        for check in self.checks():
            outcome = await check.run()
            results.append(
                {
                    "name": check.name,
                    "passed": outcome.success,
                    "critical": check.critical,
                    "description": check.description,
                    "duration": outcome.duration_ms,
                    "status": "PASS" if outcome.success else ("ERROR" if outcome.error else "FAIL"),
                }
            )

        passed = len([result for result in results if result["passed"]])
        critical = [result for result in results if result["critical"]]
        critical_failed = [result["name"] for result in critical if not result["passed"]]
        score = ratio(passed, len(results))
        ready = not critical_failed
        return ProbeResult(
            success=ready,
            message=(
                f"Production readiness: {passed}/{len(results)} checks passed "
                f"({len(critical) - len(critical_failed)}/{len(critical)} critical), {score:.1f}% ready"
            ),
            data={
                "checkResults": results,
                "summary": {
                    "totalChecks": len(results),
                    "passedChecks": passed,
                    "criticalChecks": len(critical),
                    "criticalPassed": len(critical) - len(critical_failed),
                    "criticalFailed": critical_failed,
                    "overallScore": score,
                    "productionReady": ready,
                },
            },
        )


def create_production_suite(
    config: RunConfig,
    client: InvoiceApiClient,
    environ: Optional[Mapping[str, str]] = None,
) -> ProbeSuite:
    probes = ProductionProbes(config, client, environ)
    return ProbeSuite(
        name=SUITE_NAME,
        title="Production Readiness",
        setup=client.open,
        teardown=client.close,
        cases=[
            ProbeCase("Environment Configuration", probes.environment_variables),
            ProbeCase("Database Connections", probes.database_connections),
            ProbeCase("SSL/HTTPS Security", probes.https_enforcement),
            ProbeCase("Static Asset Delivery", probes.static_assets),
            ProbeCase("Input Sanitization Security", probes.input_sanitization),
            ProbeCase("API Rate Limiting", probes.rate_limiting, timeout_ms=10000),
            ProbeCase("File Upload Security", probes.upload_security),
            ProbeCase("Comprehensive Production Check", probes.comprehensive, timeout_ms=60000),
        ],
    )
