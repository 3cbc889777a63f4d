"""Teardown reporting and the post-provision connection summary."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

DELETED = 'deleted'
ALREADY_ABSENT = 'already_absent'
SKIPPED = 'skipped'
FAILED = 'failed'


@dataclass
class ResourceOutcome:
    """Result of tearing down one handle."""
    name: str
    kind: str
    resource_id: Optional[str]
    outcome: str  # 'deleted', 'already_absent', 'skipped', 'failed'
    message: str = ''
    duration: float = 0.0


@dataclass
class TeardownReport:
    """Collects per-handle teardown outcomes."""
    project_tag: str
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    dry_run: bool = False

    def start(self):
        """Mark teardown start."""
        self.started_at = datetime.now()

    def finish(self):
        """Mark teardown end."""
        self.finished_at = datetime.now()

    def record(self, name: str, kind: str, resource_id: Optional[str], outcome: str,
               message: str = '', duration: float = 0.0) -> ResourceOutcome:
        """Record the outcome for one handle."""
        result = ResourceOutcome(
            name=name,
            kind=kind,
            resource_id=resource_id,
            outcome=outcome,
            message=message,
            duration=duration,
        )
        self.outcomes.append(result)
        return result

    def _with(self, outcome: str) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if o.outcome == outcome]

    @property
    def deleted(self) -> list[ResourceOutcome]:
        return self._with(DELETED)

    @property
    def already_absent(self) -> list[ResourceOutcome]:
        return self._with(ALREADY_ABSENT)

    @property
    def skipped(self) -> list[ResourceOutcome]:
        return self._with(SKIPPED)

    @property
    def failures(self) -> list[ResourceOutcome]:
        return self._with(FAILED)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def counts(self) -> dict[str, int]:
        return {
            DELETED: len(self.deleted),
            ALREADY_ABSENT: len(self.already_absent),
            SKIPPED: len(self.skipped),
            FAILED: len(self.failures),
        }

    def outcome_of(self, name: str) -> Optional[str]:
        """Outcome recorded for a handle name, None if not reached."""
        for o in self.outcomes:
            if o.name == name:
                return o.outcome
        return None

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result: dict = {
            'project_tag': self.project_tag,
            'success': self.success,
            'dry_run': self.dry_run,
            'duration_seconds': round(self.duration, 1),
            'counts': self.counts(),
            'resources': [
                {
                    'name': o.name,
                    'kind': o.kind,
                    'id': o.resource_id,
                    'outcome': o.outcome,
                    'duration': round(o.duration, 1),
                }
                for o in self.outcomes
            ],
        }
        for entry, o in zip(result['resources'], self.outcomes):
            if o.message:
                entry['message'] = o.message
        if self.failures:
            result['failures'] = [f"{o.name} ({o.resource_id}): {o.message}" for o in self.failures]
        return result

    def format_summary(self) -> str:
        """Render a plain-text table of outcomes."""
        lines = [
            f"Teardown of '{self.project_tag}'" + (" (dry run)" if self.dry_run else ""),
            "",
            f"  {'RESOURCE':<28} {'ID':<26} OUTCOME",
        ]
        for o in self.outcomes:
            lines.append(f"  {o.name:<28} {o.resource_id or '-':<26} {o.outcome}")
        counts = self.counts()
        lines.extend([
            "",
            f"  deleted={counts[DELETED]} already_absent={counts[ALREADY_ABSENT]} "
            f"skipped={counts[SKIPPED]} failed={counts[FAILED]}",
        ])
        if self.failures:
            lines.extend(["", "Failures (re-run deprovision once resolved):"])
            for o in self.failures:
                lines.append(f"  ✗ {o.name} ({o.resource_id}): {o.message}")
        return '\n'.join(lines)

    def write_markdown(self, report_dir: Path) -> Path:
        """Write markdown report to report_dir; returns the file path."""
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# Teardown: {self.project_tag}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Resources",
            "",
            "| Resource | ID | Outcome | Duration | Message |",
            "|----------|----|---------|----------|---------|",
        ]
        for o in self.outcomes:
            emoji = {DELETED: '✅', ALREADY_ABSENT: '➖', FAILED: '❌', SKIPPED: '⏭️'}.get(o.outcome, '❓')
            lines.append(
                f"| {o.name} | {o.resource_id or '-'} | {emoji} {o.outcome} | {o.duration:.1f}s | {o.message} |"
            )
        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        path = self._report_filename(report_dir, 'md')
        with open(path, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return path

    def write_json(self, report_dir: Path) -> Path:
        """Write JSON report to report_dir; returns the file path."""
        path = self._report_filename(report_dir, 'json')
        with open(path, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        report_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        return report_dir / f"{timestamp}.{self.project_tag}.teardown.{status}.{ext}"


def connection_summary(topology, login_user: str = 'ec2-user', key_path: Optional[Path] = None) -> dict:
    """Collect instance addresses and ready-to-paste commands.

    Args:
        topology: Provisioned Topology
        login_user: SSH login user on the instances
        key_path: Private key file

    Returns:
        Dict with addresses and a 'commands' list
    """
    def attr(name: str, key: str) -> Optional[str]:
        handle = topology.get(name)
        return handle.attributes.get(key) if handle else None

    bastion_ip = attr('bastion_instance', 'public_ip')
    web_ip = attr('web_instance', 'public_ip')
    app_ip = attr('app_instance', 'private_ip')
    key = str(key_path) if key_path else '<key>'

    commands = []
    if bastion_ip:
        commands.append(f"ssh -i {key} {login_user}@{bastion_ip}")
        if app_ip:
            commands.append(
                f"ssh -i {key} -J {login_user}@{bastion_ip} {login_user}@{app_ip}"
            )
    if web_ip:
        commands.append(f"http://{web_ip}")

    return {
        'bastion_public_ip': bastion_ip,
        'web_public_ip': web_ip,
        'app_private_ip': app_ip,
        'commands': commands,
    }


def format_connection_summary(summary: dict) -> str:
    """Render the connection summary for the terminal."""
    lines = [
        "",
        "=" * 65,
        "  Connection Information",
        "=" * 65,
        f"  Bastion (public):  {summary.get('bastion_public_ip') or '-'}",
        f"  Web (public):      {summary.get('web_public_ip') or '-'}",
        f"  App (private):     {summary.get('app_private_ip') or '-'}",
        "",
    ]
    for command in summary.get('commands', []):
        lines.append(f"  {command}")
    lines.append("")
    return '\n'.join(lines)
