"""Activity summary job: writes what the rules did since the previous run."""

import logging
from collections import Counter
from datetime import timedelta
from pathlib import Path

from ...models import AutomationJob, AutomationJobRun, ExecutedRule, ExecutedRuleStatus
from ...processors.llm import LLMClient
from ..state import AutomationState
from .base import AutomationJobPlugin

logger = logging.getLogger(__name__)

# Fallback window for the first run of a job
DEFAULT_PERIOD = timedelta(days=1)


class ActivitySummaryPlugin(AutomationJobPlugin):
    """Writes a markdown summary of an account's executed rules to a file.

    Job config options:
        output_dir: Directory to write to. Default: the plugin's output_dir.
        filename_template: Default: summary_{job_id}_{timestamp}.md
        limit: Maximum number of executed rules to include. Default: 500.
    """

    def __init__(
        self,
        output_dir: Path,
        llm_client: LLMClient | None = None,
        max_tokens: int = 300,
    ) -> None:
        self.output_dir = output_dir
        self.llm_client = llm_client
        self.max_tokens = max_tokens

    @property
    def job_type(self) -> str:
        return "activity_summary"

    @property
    def description(self) -> str:
        return "Summarize rule activity since the previous run to a markdown file"

    async def run(
        self,
        job: AutomationJob,
        run: AutomationJobRun,
        state: AutomationState,
    ) -> str | None:
        previous = state.get_previous_job_run(job.id, run.scheduled_for)
        since = previous.scheduled_for if previous else run.scheduled_for - DEFAULT_PERIOD

        executed = state.list_executed_rules(
            account_id=job.account_id,
            since=since,
            limit=int(job.config.get("limit", 500)),
        )
        rule_names = {rule.id: rule.name for rule in state.list_rules(job.account_id)}

        content = self._render(job, run, since.isoformat(), executed, rule_names)

        output_dir_str = job.config.get("output_dir")
        output_dir = Path(output_dir_str).expanduser() if output_dir_str else self.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)

        timestamp = run.scheduled_for.strftime("%Y%m%d_%H%M%S")
        template = job.config.get("filename_template", "summary_{job_id}_{timestamp}.md")
        filepath = output_dir / template.format(job_id=job.id, timestamp=timestamp, run_id=run.id)
        filepath.write_text(content)

        logger.info(f"Wrote activity summary for job {job.id} to {filepath}")
        return f"{len(executed)} executed rules summarized to {filepath}"

    def _render(
        self,
        job: AutomationJob,
        run: AutomationJobRun,
        since: str,
        executed: list[ExecutedRule],
        rule_names: dict[str, str],
    ) -> str:
        title = job.name or "Rule activity"
        lines = [
            f"# {title}",
            "",
            f"*Period: {since} to {run.scheduled_for.isoformat()}*",
            "",
        ]

        if not executed:
            lines.append("No rule activity in this period.")
            return "\n".join(lines) + "\n"

        overview = self._overview(job, executed, rule_names)
        if overview:
            lines += ["## Overview", "", overview, ""]

        statuses = Counter(record.status.value for record in executed)
        lines += ["## By status", ""]
        for status, count in sorted(statuses.items()):
            lines.append(f"- **{status}**: {count}")
        lines.append("")

        per_rule = Counter(
            rule_names.get(record.rule_id, "(deleted rule)") if record.rule_id else "(no rule)"
            for record in executed
        )
        lines += ["## By rule", ""]
        for name, count in per_rule.most_common():
            lines.append(f"- {name}: {count}")
        lines.append("")

        errors = [r for r in executed if r.status == ExecutedRuleStatus.ERROR]
        if errors:
            lines += ["## Errors", ""]
            for record in errors:
                reason = record.reason.replace("\n", " / ")
                lines.append(f"- `{record.message_id}`: {reason}")
            lines.append("")

        return "\n".join(lines)

    def _overview(
        self,
        job: AutomationJob,
        executed: list[ExecutedRule],
        rule_names: dict[str, str],
    ) -> str | None:
        if not self.llm_client:
            return None

        entries = "\n".join(
            f"- {rule_names.get(r.rule_id or '', 'no rule')}: {r.status.value}"
            for r in executed[:50]
        )
        prompt = f"""Write a 2-3 sentence overview of what the user's email rules did.

{job.prompt or ""}

Activity ({len(executed)} entries, most recent first):
{entries}

Overview:"""

        try:
            return self.llm_client.chat(
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
                temperature=0.3,
            ).strip()
        except Exception as e:
            logger.warning(f"Could not generate LLM overview for job {job.id}: {e}")
            return None
