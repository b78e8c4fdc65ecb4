"""Adapters translating scanner output into normalized findings.

Each adapter implements one extraction interface (FindingsAdapter); the
ScanRunner looks adapters up by the task's report_format and never
branches on tool identity.

Supported formats:
    trivy: ``trivy image|fs --format json``
    grype: ``grype <target> -o json``
    sarif: SARIF 2.1.0 (semgrep, codeql, checkov, ...)
    gitleaks: ``gitleaks detect --report-format json``
    exit-code: tools without structured output; a non-zero accepted exit
        code becomes a single finding

Example:
    >>> adapter = get_adapter("trivy")
    >>> findings = adapter.parse(trivy_json_output, exit_code=0)
    >>> SeverityHistogram.from_findings(findings).critical
    2
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import structlog

from shipgate.errors import AdapterParseError
from shipgate.schemas.scan import Finding, Severity

logger = structlog.get_logger(__name__)


class FindingsAdapter(Protocol):
    """Common extraction interface for scanner output.

    Attributes:
        name: Report format name used in ScanTask.report_format.
        accepted_exit_codes: Exit codes meaning the tool ran to completion
            (findings tools often exit non-zero when they find something).
    """

    name: str
    accepted_exit_codes: frozenset[int]

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        """Translate raw output into findings.

        Raises:
            AdapterParseError: If the output is not in the expected format.
        """
        ...


def _load_json(output: str, report_format: str) -> Any:
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        logger.error("adapter_parse_failed", report_format=report_format, error=str(e))
        raise AdapterParseError(
            f"Invalid {report_format} JSON: {e}",
            report_format=report_format,
            raw_output=output,
        ) from e


class TrivyAdapter:
    """Trivy JSON output. CVEs reported for several targets are counted once."""

    name = "trivy"
    accepted_exit_codes = frozenset({0, 1})

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        data = _load_json(output, self.name)
        if not isinstance(data, dict) or "Results" not in data:
            raise AdapterParseError(
                "Missing 'Results' key in Trivy output",
                report_format=self.name,
                raw_output=output,
            )

        findings: list[Finding] = []
        seen: set[str] = set()
        for result in data.get("Results") or []:
            for vuln in result.get("Vulnerabilities") or []:
                cve_id = vuln.get("VulnerabilityID", "UNKNOWN")
                if cve_id in seen:
                    continue
                seen.add(cve_id)
                pkg = vuln.get("PkgName")
                findings.append(
                    Finding(
                        rule_id=cve_id,
                        severity=Severity.parse(vuln.get("Severity")),
                        message=vuln.get("Title") or "",
                        location=f"{result.get('Target', '')}:{pkg}" if pkg else result.get("Target"),
                    )
                )
            for misconfig in result.get("Misconfigurations") or []:
                rule_id = misconfig.get("ID") or misconfig.get("AVDID") or "UNKNOWN"
                if rule_id in seen:
                    continue
                seen.add(rule_id)
                findings.append(
                    Finding(
                        rule_id=rule_id,
                        severity=Severity.parse(misconfig.get("Severity")),
                        message=misconfig.get("Title") or "",
                        location=result.get("Target"),
                    )
                )
        return findings


class GrypeAdapter:
    """Grype JSON output. Severities arrive mixed case and are normalized."""

    name = "grype"
    accepted_exit_codes = frozenset({0, 1})

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        data = _load_json(output, self.name)
        if not isinstance(data, dict) or "matches" not in data:
            raise AdapterParseError(
                "Missing 'matches' key in Grype output",
                report_format=self.name,
                raw_output=output,
            )

        findings: list[Finding] = []
        seen: set[str] = set()
        for match in data.get("matches") or []:
            vulnerability = match.get("vulnerability", {})
            cve_id = vulnerability.get("id", "UNKNOWN")
            if cve_id in seen:
                continue
            seen.add(cve_id)
            artifact = match.get("artifact", {})
            findings.append(
                Finding(
                    rule_id=cve_id,
                    severity=Severity.parse(vulnerability.get("severity")),
                    message=vulnerability.get("description") or "",
                    location=artifact.get("name"),
                )
            )
        return findings


def _severity_from_score(score: float) -> Severity:
    # CVSS v3 qualitative bands
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0.0:
        return Severity.LOW
    return Severity.INFO


class SarifAdapter:
    """SARIF 2.1.0 output.

    A rule's ``security-severity`` property (CVSS score) takes precedence
    over the result level (error, warning, note).
    """

    name = "sarif"
    accepted_exit_codes = frozenset({0, 1})

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        data = _load_json(output, self.name)
        if not isinstance(data, dict) or not isinstance(data.get("runs"), list):
            raise AdapterParseError(
                "Missing 'runs' array in SARIF output",
                report_format=self.name,
                raw_output=output,
            )

        findings: list[Finding] = []
        seen: set[tuple[str, str | None]] = set()
        for run in data["runs"]:
            rule_scores = self._rule_scores(run)
            for result in run.get("results") or []:
                rule_id = result.get("ruleId") or "UNKNOWN"
                location = self._location(result)
                if (rule_id, location) in seen:
                    continue
                seen.add((rule_id, location))
                if rule_id in rule_scores:
                    severity = _severity_from_score(rule_scores[rule_id])
                else:
                    severity = Severity.parse(result.get("level", "warning"))
                findings.append(
                    Finding(
                        rule_id=rule_id,
                        severity=severity,
                        message=(result.get("message") or {}).get("text", ""),
                        location=location,
                    )
                )
        return findings

    @staticmethod
    def _rule_scores(run: dict[str, Any]) -> dict[str, float]:
        scores: dict[str, float] = {}
        rules = ((run.get("tool") or {}).get("driver") or {}).get("rules") or []
        for rule in rules:
            raw = (rule.get("properties") or {}).get("security-severity")
            if raw is None or "id" not in rule:
                continue
            try:
                scores[rule["id"]] = float(raw)
            except (TypeError, ValueError):
                logger.debug("sarif_invalid_security_severity", rule=rule["id"], value=raw)
        return scores

    @staticmethod
    def _location(result: dict[str, Any]) -> str | None:
        locations = result.get("locations") or []
        if not locations:
            return None
        physical = locations[0].get("physicalLocation") or {}
        uri = (physical.get("artifactLocation") or {}).get("uri")
        line = (physical.get("region") or {}).get("startLine")
        if uri and line:
            return f"{uri}:{line}"
        return uri


class GitleaksAdapter:
    """Gitleaks JSON report. Every leaked secret is a HIGH finding.

    Gitleaks exits 1 when leaks are found; empty output means no leaks.
    """

    name = "gitleaks"
    accepted_exit_codes = frozenset({0, 1})

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        if not output.strip():
            return []
        data = _load_json(output, self.name)
        if not isinstance(data, list):
            raise AdapterParseError(
                "Gitleaks report must be a JSON array",
                report_format=self.name,
                raw_output=output,
            )

        findings: list[Finding] = []
        seen: set[str] = set()
        for leak in data:
            location = f"{leak.get('File', '')}:{leak.get('StartLine', 0)}"
            fingerprint = leak.get("Fingerprint") or f"{leak.get('RuleID')}@{location}"
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            findings.append(
                Finding(
                    rule_id=leak.get("RuleID") or "generic-secret",
                    severity=Severity.HIGH,
                    message=leak.get("Description") or "Secret detected",
                    location=location,
                )
            )
        return findings


class ExitCodeAdapter:
    """Tools without structured output: a non-zero exit is one finding."""

    name = "exit-code"

    def __init__(
        self,
        severity: Severity = Severity.HIGH,
        accepted_exit_codes: frozenset[int] = frozenset({0, 1}),
    ) -> None:
        self.severity = severity
        self.accepted_exit_codes = accepted_exit_codes

    def parse(self, output: str, exit_code: int) -> list[Finding]:
        if exit_code == 0:
            return []
        message = output.strip().splitlines()[0] if output.strip() else ""
        return [
            Finding(
                rule_id=f"exit-{exit_code}",
                severity=self.severity,
                message=message[:500],
            )
        ]


ADAPTERS: dict[str, FindingsAdapter] = {
    adapter.name: adapter
    for adapter in (
        TrivyAdapter(),
        GrypeAdapter(),
        SarifAdapter(),
        GitleaksAdapter(),
        ExitCodeAdapter(),
    )
}
"""Registered adapters keyed by report format."""


def get_adapter(report_format: str) -> FindingsAdapter:
    """Look up the adapter for a report format.

    Raises:
        KeyError: If no adapter is registered for the format.
    """
    try:
        return ADAPTERS[report_format]
    except KeyError:
        raise KeyError(
            f"Unknown report format {report_format!r}; "
            f"available: {sorted(ADAPTERS)}"
        ) from None


__all__: list[str] = [
    "FindingsAdapter",
    "TrivyAdapter",
    "GrypeAdapter",
    "SarifAdapter",
    "GitleaksAdapter",
    "ExitCodeAdapter",
    "ADAPTERS",
    "get_adapter",
]
