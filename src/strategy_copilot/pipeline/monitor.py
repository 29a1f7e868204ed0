"""Post-publish monitoring stage with a local risk heuristic fallback."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Final

import structlog

from strategy_copilot.domain.models import MonitorReport, Proposal, Turn
from strategy_copilot.pipeline.tools import PublishMonitor, TurnContext, require_mapping
from strategy_copilot.utils.text import as_string, dedupe_preserving_order, summarize_error

MONITOR_SKIPPED: Final[str] = "SKIPPED"
MONITOR_LOCAL: Final[str] = "LOCAL_HEURISTIC"
MONITOR_ERROR: Final[str] = "MONITOR_ERROR"
MAX_ALERTS: Final[int] = 8
MAX_RECOMMENDATIONS: Final[int] = 6


def published_proposals(turn: Turn) -> list[Proposal]:
    return [item for item in turn.proposals if item.publish is not None and item.publish.ok]


def local_monitor_report(
    proposals: Sequence[Proposal],
    *,
    source: str = MONITOR_LOCAL,
    error: str | None = None,
) -> MonitorReport:
    """Alert on risk flags and rejections recorded in each published proposal's evaluation."""

    alerts: list[str] = []
    recommendations: list[str] = []
    for proposal in proposals:
        evaluation = proposal.evaluation
        if evaluation is None:
            continue
        if evaluation.risk_flags:
            alerts.append(f"{proposal.title}: risk flags {', '.join(evaluation.risk_flags)}")
            recommendations.append(f"Monitor {proposal.title} hourly during the first day")
        if evaluation.rejected_count > 0:
            alerts.append(f"{proposal.title}: {evaluation.rejected_count} rejected evaluations")
            recommendations.append(
                f"Consider pausing {proposal.title} or adjusting its thresholds"
            )
    alerts = dedupe_preserving_order(alerts, limit=MAX_ALERTS)
    recommendations = dedupe_preserving_order(recommendations, limit=MAX_RECOMMENDATIONS)
    summary = (
        f"{len(alerts)} alert(s) across {len(proposals)} published proposal(s)"
        if alerts
        else f"No risk signals across {len(proposals)} published proposal(s)"
    )
    return MonitorReport(
        source=source,
        alerts=tuple(alerts),
        recommendations=tuple(recommendations),
        summary=summary,
        monitored_count=len(proposals),
        error=error,
    )


async def run_monitor_stage(
    turn: Turn,
    *,
    context: TurnContext,
    monitor: PublishMonitor,
    logger: Any | None = None,
) -> Turn:
    if not turn.is_ready:
        return turn
    log = logger if logger is not None else structlog.get_logger(__name__)
    published = published_proposals(turn)

    if not published:
        report = MonitorReport(source=MONITOR_SKIPPED, summary="no published proposals")
    elif not monitor.available:
        report = local_monitor_report(published)
    else:
        payload = {
            **context.base_payload(),
            "publishedProposals": [item.to_dict() for item in published],
            "explainPack": dict(turn.explain_pack or {}),
            "publishReport": turn.publish_result.to_dict() if turn.publish_result else {},
        }
        try:
            raw = require_mapping(
                await monitor.monitor_published_policies(payload), "post-publish monitor"
            )
        except Exception as exc:  # noqa: BLE001
            error = summarize_error(exc)
            log.warning("monitor_failed", error=error, published_count=len(published))
            report = local_monitor_report(published, source=MONITOR_ERROR, error=error)
        else:
            alerts = raw.get("alerts")
            recommendations = raw.get("recommendations")
            report = MonitorReport(
                source=as_string(raw.get("source")) or "MONITOR",
                alerts=tuple(
                    dedupe_preserving_order(
                        alerts if isinstance(alerts, list) else [], limit=MAX_ALERTS
                    )
                ),
                recommendations=tuple(
                    dedupe_preserving_order(
                        recommendations if isinstance(recommendations, list) else [],
                        limit=MAX_RECOMMENDATIONS,
                    )
                ),
                summary=as_string(raw.get("summary")),
                monitored_count=len(published),
            )

    log.info("monitor_completed", source=report.source, alert_count=len(report.alerts))
    return turn.with_record("post_publish_monitor", report.to_dict(), post_publish_monitor=report)


__all__ = ["local_monitor_report", "published_proposals", "run_monitor_stage"]
