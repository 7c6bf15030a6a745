"""
Output reporting: durable artifacts for downstream consumers.

Both artifacts are regenerated from the remote stack on every successful
apply and are never edited by hand.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models import ProjectStack

logger = logging.getLogger(__name__)


def outputs_path(output_dir: str, environment: str, service: Optional[str] = None) -> Path:
    if service:
        return Path(output_dir) / f"deployment-outputs-{environment}-{service}.json"
    return Path(output_dir) / f"deployment-outputs-{environment}.json"


def deployment_log_path(output_dir: str, environment: str) -> Path:
    return Path(output_dir) / f"deployment-log-{environment}.md"


def write_outputs(path: Path, outputs: Dict[str, str]) -> Path:
    """Write stack outputs as a JSON object, output key -> value."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(dict(sorted(outputs.items())), f, indent=2)
        f.write("\n")
    logger.info(f"Outputs written to {path}")
    return path


def read_outputs(path: Path) -> Optional[Dict[str, str]]:
    if not path.exists():
        return None
    with open(path, "r") as f:
        return json.load(f)


def remove_outputs(path: Path) -> bool:
    if path.exists():
        path.unlink()
        logger.info(f"Removed {path}")
        return True
    return False


def render_deployment_log(
    stack_name: str,
    environment: str,
    region: str,
    account_id: str,
    variant: str,
    outputs: Dict[str, str],
    nested_stacks: List[Dict[str, str]],
    project_stacks: List[ProjectStack],
) -> str:
    """Render the human-readable topology summary."""
    lines = [
        f"# Deployment Log: {environment}",
        "",
        f"- **Stack:** {stack_name}",
        f"- **Region:** {region}",
        f"- **Account:** {account_id}",
        f"- **Compute:** {variant}",
        f"- **Generated:** {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}",
        "",
        "## Nested Stacks",
        "",
    ]
    if nested_stacks:
        lines += ["| Logical ID | Status | Physical ID |", "|---|---|---|"]
        lines += [
            f"| {nested['logical_id']} | {nested['status']} | {nested['physical_id']} |"
            for nested in nested_stacks
        ]
    else:
        lines.append("_None_")

    lines += ["", "## Outputs", ""]
    if outputs:
        lines += ["| Key | Value |", "|---|---|"]
        lines += [f"| {key} | {value} |" for key, value in sorted(outputs.items())]
    else:
        lines.append("_None_")

    lines += ["", "## Project Stacks", ""]
    if project_stacks:
        lines += ["| Service | Stack | Compute | Status |", "|---|---|---|---|"]
        lines += [
            f"| {stack.service} | {stack.stack_name} | {stack.compute_variant.value} | {stack.state.value} |"
            for stack in project_stacks
        ]
    else:
        lines.append("_None_")

    return "\n".join(lines) + "\n"


def write_deployment_log(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    logger.info(f"Deployment log written to {path}")
    return path
