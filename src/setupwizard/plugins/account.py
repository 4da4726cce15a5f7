"""Administrator account step.

The password is hashed before staging, so the plain value never reaches the
session store. When ``license.verify_url`` is configured the licence key is
verified remotely (with the configured timeout) before the step completes.

Commit writes the account into ``users`` as an upsert keyed by email, so a
retried installation updates the row instead of duplicating it.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from collections.abc import Mapping
from typing import Any

from setupwizard.core.config import WizardSettings
from setupwizard.core.context import RunContext
from setupwizard.core.diagnostics import utcnow_iso
from setupwizard.core.errors import ValidationError
from setupwizard.core.external import call_endpoint
from setupwizard.core.interfaces import PermanentStore
from setupwizard.core.logging import get_logger
from setupwizard.core.staging import StagedSnapshot
from setupwizard.core.steps import StepDescriptor, StepRegistry

log = get_logger(__name__)

STEP_ID = "account"
USERS_TABLE = "users"
PBKDF2_ITERATIONS = 260_000


def hash_password(password: str, *, salt: bytes | None = None) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt>$<hash>`` (base64 parts)."""
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return "$".join(
        [
            "pbkdf2_sha256",
            str(PBKDF2_ITERATIONS),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(digest).decode("ascii"),
        ]
    )


def verify_password(password: str, encoded: str) -> bool:
    try:
        algo, iterations, salt_b64, hash_b64 = encoded.split("$")
    except ValueError:
        return False
    if algo != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), base64.b64decode(salt_b64), int(iterations)
    )
    return hmac.compare_digest(digest, base64.b64decode(hash_b64))


def is_displayed(snapshot: StagedSnapshot) -> bool:
    return snapshot.get_value("app", "create_admin", True) is not False


def _verify_license(context: RunContext, url: str, key: str, email: str) -> dict[str, Any]:
    body = call_endpoint(
        url,
        {"license_key": key, "email": email},
        timeout=context.settings.external_timeout,
    )
    if body.get("valid") is not True:
        reason = body.get("message") or "The license key is invalid."
        raise ValidationError("License verification failed", {"license_key": [str(reason)]})
    log.info(f"license verified for {email}")
    return {"key": key, "licensee": body.get("licensee"), "expires_at": body.get("expires_at")}


def execute(data: dict[str, Any], context: RunContext) -> dict[str, Any]:
    email = str(data["email"]).strip().lower()
    out: dict[str, Any] = {
        "name": str(data["name"]).strip(),
        "email": email,
        "password_hash": hash_password(str(data["password"])),
    }
    key = data.get("license_key")
    url = context.settings.license_verify_url
    if url and key:
        out["license"] = _verify_license(context, url, str(key), email)
    return out


def commit(staged: Mapping[str, Any], store: PermanentStore) -> None:
    store.upsert(
        USERS_TABLE,
        {
            "name": staged["name"],
            "email": staged["email"],
            "password": staged["password_hash"],
            "is_admin": True,
            "created_at": utcnow_iso(),
        },
        keys=("email",),
    )


def register(registry: StepRegistry, settings: WizardSettings) -> StepDescriptor:
    license_rule = "required|string|max:128" if settings.license_verify_url else "nullable|string"
    return registry.register(
        StepDescriptor(
            id=STEP_ID,
            position=40,
            title="Administrator Account",
            depends_on=frozenset({"environment"}),
            display_predicate=is_displayed,
            rules={
                "name": "required|string|max:255",
                "email": "required|email|max:255|unique:users,email",
                "password": "required|string|min:8|confirmed",
                "license_key": license_rule,
            },
            execute=execute,
            commit=commit,
            schema_requirements={USERS_TABLE: ["name", "email", "password", "created_at"]},
        )
    )
