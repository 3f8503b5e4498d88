"""Output rendering for the chatdelta CLI.

Turns already-computed run reports and metrics into text, JSON or Markdown.
Nothing here talks to providers.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from chatdelta.core.orchestrator import RunReport
from chatdelta.core.providers.base import ModelListing, Provider
from chatdelta.core.resilience import Failure, QueryOutcome, Success

OUTPUT_FORMATS = ("text", "json", "markdown")


def _responses(report: RunReport) -> List[Success]:
    return report.results.successes()


def render_json(report: RunReport) -> str:
    payload: Dict[str, Any] = {
        "prompt": report.prompt,
        "responses": {s.provider.value: s.content for s in _responses(report)},
    }
    errors = {f.provider.value: f.error_kind.value for f in report.results.failures()}
    if errors:
        payload["errors"] = errors
    if report.summary is not None:
        payload["summary"] = report.summary
        payload["summary_provider"] = report.summary_provider.value
    payload["duration_ms"] = report.duration_ms
    return json.dumps(payload, indent=2)


def render_markdown(report: RunReport) -> str:
    lines = ["# ChatDelta Results", "", f"**Prompt:** {report.prompt}", ""]
    for response in _responses(report):
        lines += [f"## {response.provider.display_name}", "", response.content, ""]
    for failure in report.results.failures():
        lines += [
            f"## {failure.provider.display_name}",
            "",
            f"_Failed: {failure.error_kind.value}_",
            "",
        ]
    if report.summary is not None:
        lines += ["## Summary", "", report.summary, ""]
    return "\n".join(lines)


def render_text(report: RunReport, verbose: bool = False) -> str:
    responses = _responses(report)
    if len(responses) == 1:
        return responses[0].content

    blocks = []
    if verbose:
        for response in responses:
            blocks.append(f"=== {response.provider.display_name} ===\n{response.content}\n")
        if report.summary is not None:
            blocks.append(f"=== Summary ===\n{report.summary}")
        return "\n".join(blocks).rstrip()

    if report.summary is not None:
        return report.summary
    # No summary: print every response, labelled.
    for response in responses:
        blocks.append(f"=== {response.provider.display_name} ===\n{response.content}\n")
    return "\n".join(blocks).rstrip()


def render_report(report: RunReport, fmt: str = "text", verbose: bool = False) -> str:
    """Render a run report in one of OUTPUT_FORMATS."""
    if fmt == "json":
        return render_json(report)
    if fmt == "markdown":
        return render_markdown(report)
    return render_text(report, verbose=verbose)


def failure_warnings(report: RunReport) -> List[str]:
    return [
        f"Warning: {f.provider.display_name} failed ({f.error_kind.value}): {f.message}"
        for f in report.results.failures()
    ]


def write_transcript(path: Path, report: RunReport) -> None:
    """Write a plain-text transcript of the interaction to ``path``.

    Raises:
        OSError: If the file cannot be written.
    """
    parts = [f"Prompt:\n{report.prompt}\n"]
    for response in _responses(report):
        parts.append(f"{response.provider.display_name}:\n{response.content}\n")
    if report.summary is not None:
        parts.append(f"Summary:\n{report.summary}\n")
    Path(path).write_text("\n".join(parts), encoding="utf-8")


def render_metrics(session: Mapping[str, Any], verbose: bool = False) -> str:
    """Render a MetricsCollector.session_summary() as a short report."""
    lines = [
        "Performance Metrics",
        "-" * 38,
        f"Session Duration: {session['duration_seconds']}s",
        f"Total Requests: {session['total_requests']}",
        f"Success Rate: {session['success_rate'] * 100:.1f}%",
        f"Avg Latency: {session['average_latency_ms']}ms",
    ]
    if session["total_tokens"]:
        lines.append(f"Total Tokens: {session['total_tokens']}")

    if verbose and session["providers"]:
        lines.append("")
        lines.append("Per-Provider Breakdown:")
        for name, stats in session["providers"].items():
            lines.append(f"  {Provider(name).display_name}:")
            lines.append(
                f"    Requests: {stats['attempts']} "
                f"(Success: {stats['success_rate'] * 100:.1f}%)"
            )
            lines.append(
                f"    Latency: mean {stats['mean_latency_ms']:.0f}ms, "
                f"p50 {stats['p50_latency_ms']}ms, p95 {stats['p95_latency_ms']}ms"
            )
            if stats["total_tokens"]:
                lines.append(f"    Tokens Used: {stats['total_tokens']}")
    lines.append("-" * 38)
    return "\n".join(lines)


def render_models(listings: Sequence[ModelListing]) -> str:
    lines = ["Available models:"]
    for listing in listings:
        lines.append(f"\n{listing.display_name} ({listing.provider.value}):")
        for model in listing.models:
            marker = " (default)" if model == listing.default_model else ""
            lines.append(f"  - {model}{marker}")
    return "\n".join(lines)


def render_connection_results(results: Mapping[Provider, QueryOutcome]) -> str:
    lines = ["Connection test:"]
    for provider, outcome in results.items():
        if isinstance(outcome, Failure):
            lines.append(
                f"  {provider.display_name}: FAILED ({outcome.error_kind.value}) {outcome.message}"
            )
        else:
            lines.append(f"  {provider.display_name}: OK ({outcome.latency_ms}ms)")
    return "\n".join(lines)
