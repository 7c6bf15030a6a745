from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from ..errors import SecretProvisionError
from .redact import forget_secret, redact_string, register_secret

logger = logging.getLogger(__name__)

PLACEHOLDER = "PLACEHOLDER_UPDATE_AFTER_DEPLOYMENT"


@dataclass
class SecretStatus:
    secret_id: str
    exists: bool
    configured: bool
    length: int = 0


def _base_cmd(region: str, profile: Optional[str]) -> List[str]:
    cmd = ["aws", "--region", region]
    if profile:
        cmd += ["--profile", profile]
    return cmd


def source_token_material(token: str) -> str:
    return json.dumps({"pat": token})


def provision(secret_id: str, material: str, region: str, profile: Optional[str] = None) -> None:
    """
    Write ``material`` as the current value of ``secret_id``.

    The value goes through an owner-only temp file referenced as file://, so
    it never appears on a command line. The file is removed before returning,
    on success and on error.

    Raises:
        SecretProvisionError: If the secret store rejects the write
    """
    if not material:
        raise SecretProvisionError(f"Refusing to write an empty value to {secret_id}")

    register_secret(material)
    fd, tmp_path = tempfile.mkstemp(prefix="strata-secret-", suffix=".json")
    try:
        os.chmod(tmp_path, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(material)

        cmd = _base_cmd(region, profile) + [
            "secretsmanager", "put-secret-value",
            "--secret-id", secret_id,
            "--secret-string", f"file://{tmp_path}",
        ]
        subprocess.run(cmd, check=True, capture_output=True, text=True)
        logger.info(f"Secret {secret_id} updated")
    except subprocess.CalledProcessError as e:
        detail = redact_string((e.stderr or "").strip())
        raise SecretProvisionError(
            f"Failed to write secret {secret_id}: {detail or f'exit code {e.returncode}'}",
            remediation="Check that the secret exists and the identity may call secretsmanager:PutSecretValue",
        ) from None
    except FileNotFoundError as e:
        raise SecretProvisionError(
            "The aws command line tool is required to provision secrets",
            remediation="Install the AWS CLI and make sure it is on PATH",
        ) from e
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        forget_secret(material)


def verify(secret_id: str, region: str, profile: Optional[str] = None) -> SecretStatus:
    """Report whether a secret holds a real value. Only the length is exposed."""
    cmd = _base_cmd(region, profile) + [
        "secretsmanager", "get-secret-value",
        "--secret-id", secret_id,
        "--query", "SecretString",
        "--output", "text",
    ]
    proc = subprocess.run(cmd, check=False, capture_output=True, text=True)
    if proc.returncode != 0:
        if "ResourceNotFoundException" in (proc.stderr or ""):
            return SecretStatus(secret_id=secret_id, exists=False, configured=False)
        raise SecretProvisionError(
            f"Failed to read secret {secret_id}: {redact_string((proc.stderr or '').strip())}"
        )

    value = (proc.stdout or "").strip()
    configured = bool(value) and PLACEHOLDER not in value
    return SecretStatus(secret_id=secret_id, exists=True, configured=configured, length=len(value))
