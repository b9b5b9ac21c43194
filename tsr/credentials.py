from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable

from . import db, envfile
from .docker_ops import DockerRuntime
from .health import wait_until
from .runtime import OK, SOFT_FAIL, StepResult


# Laravel Sanctum style personal access token: "<id>|<secret>"
TOKEN_PATTERN = re.compile(r"[0-9]+\|[A-Za-z0-9]+")

_ANSI_RE = re.compile(r"\x1B(?:\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])")
# Escape sequences whose ESC byte was already stripped by an intermediate shell.
_BARE_SGR_RE = re.compile(r"\[[0-9;]*[mK]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


class CredentialError(RuntimeError):
    pass


@dataclass(frozen=True)
class Credential:
    value: str = field(repr=False)
    source_service: str
    target_service: str
    target_key: str
    pattern: str = TOKEN_PATTERN.pattern
    verified: bool = True


def strip_noise(raw: str) -> str:
    text = _ANSI_RE.sub("", raw)
    text = _BARE_SGR_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


def extract(
    raw_output: str,
    pattern: re.Pattern[str] | str = TOKEN_PATTERN,
    strict: bool = False,
) -> tuple[str, bool]:
    """Pull a token out of noisy command output.

    Returns (token, verified). ``verified`` is False when the primary pattern
    missed and the last whitespace-delimited word was taken instead; with
    ``strict=True`` that case raises ``CredentialError``.
    """
    rx = re.compile(pattern) if isinstance(pattern, str) else pattern
    text = strip_noise(raw_output or "")
    m = rx.search(text)
    if m:
        return m.group(0), True
    words = text.split()
    if not words:
        raise CredentialError("Source output is empty; no credential to extract.")
    if strict:
        raise CredentialError("Primary token pattern did not match and strict extraction is enabled.")
    return words[-1], False


def inject(token: str, target_config_path: str, target_key: str) -> bool:
    """Set-or-append ``target_key=token`` in a flat config file. Idempotent."""
    if not token:
        raise CredentialError("Refusing to inject an empty credential.")
    return envfile.set_value(target_config_path, target_key, token)


def signal_reload(
    runtime: DockerRuntime,
    container: str,
    probe: Callable[[], bool] | None = None,
    max_attempts: int = 30,
    interval_s: float = 5.0,
    sleep: Callable[[float], None] | None = None,
) -> bool:
    """Restart ``container`` so it rereads its config, then wait for ``probe``.

    A container that does not exist yet reads the config when it first boots,
    so there is nothing to signal.
    """
    ref = runtime.get_container(container)
    if ref is None or not ref.running:
        return True
    runtime.restart(container)
    if probe is None:
        return True
    kwargs = {"sleep": sleep} if sleep is not None else {}
    ready, _ = wait_until(probe, max_attempts, interval_s, **kwargs)
    return ready


def propagate(
    raw_output: str,
    source_service: str,
    target_service: str,
    target_config_path: str,
    target_key: str,
    reload: Callable[[], bool] | None = None,
    pattern: re.Pattern[str] | str = TOKEN_PATTERN,
    strict: bool = False,
    namespace: str | None = None,
) -> tuple[Credential, StepResult]:
    """Extract a freshly minted secret and hand it to the sibling service.

    The token value itself is never journaled.
    """
    token, verified = extract(raw_output, pattern=pattern, strict=strict)
    cred = Credential(
        value=token,
        source_service=source_service,
        target_service=target_service,
        target_key=target_key,
        pattern=pattern if isinstance(pattern, str) else pattern.pattern,
        verified=verified,
    )
    changed = inject(token, target_config_path, target_key)
    if reload is not None and changed and not reload():
        raise CredentialError(f"{target_service} did not come back after reload.")

    if verified:
        db.log_event(
            "INFO",
            f"Propagated {target_key} to {target_service}{'' if changed else ' (unchanged)'}.",
            service_name=source_service,
            namespace=namespace,
        )
        return cred, StepResult("credential", OK, f"{target_key} propagated", service=source_service)

    msg = f"UNVERIFIED credential propagated to {target_service}.{target_key}: primary pattern missed, used last-word fallback."
    db.log_event("WARN", msg, service_name=source_service, namespace=namespace)
    return cred, StepResult("credential", SOFT_FAIL, msg, service=source_service)
