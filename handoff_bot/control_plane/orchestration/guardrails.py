"""Pure guardrail evaluation for mutating GitHub operations."""

from __future__ import annotations

from handoff_bot.control_plane.config.config_resolver import EngineConfig
from handoff_bot.control_plane.models.contracts import BlockedBy, GuardrailDecision


CODE_ALLOWED = "ALLOWED"
CODE_CONFIG_MISSING = "CONFIG_MISSING"
CODE_OPERATION_DENYLISTED = "OPERATION_DENYLISTED"
CODE_REPO_NOT_ALLOWED = "REPO_NOT_ALLOWED"
CODE_TOKEN_SCOPE_INSUFFICIENT = "TOKEN_SCOPE_INSUFFICIENT"


def evaluate(
    operation: str,
    repo: str,
    actor: str,
    required_capabilities: tuple[str, ...] | list[str],
    required_config: tuple[str, ...] | list[str],
    config: EngineConfig,
) -> GuardrailDecision:
    """Evaluate deny conditions in priority order; the first match wins.

    ``actor`` is accepted for audit symmetry and does not influence the decision.
    """

    del actor
    missing = config.missing(tuple(required_config))
    if missing:
        return GuardrailDecision(
            allowed=False,
            code=CODE_CONFIG_MISSING,
            blocked_by=BlockedBy.CONFIG,
            missing_config=tuple(missing),
            details_safe=f"missing config: {', '.join(missing)}",
        )

    if operation in config.denied_operations:
        return GuardrailDecision(
            allowed=False,
            code=CODE_OPERATION_DENYLISTED,
            blocked_by=BlockedBy.POLICY,
            details_safe=f"operation {operation} is denylisted",
        )

    granted = config.capabilities_for(repo or "")
    lacking = sorted(set(required_capabilities) - granted)
    if not repo or lacking:
        detail = f"repo {repo or '<unset>'} not allowlisted"
        if repo and granted:
            detail = f"{detail} for {', '.join(lacking)}"
        return GuardrailDecision(
            allowed=False,
            code=CODE_REPO_NOT_ALLOWED,
            blocked_by=BlockedBy.POLICY,
            details_safe=detail,
        )

    if config.token_scopes is not None:
        uncovered = sorted(set(required_capabilities) - config.token_scopes)
        if uncovered:
            return GuardrailDecision(
                allowed=False,
                code=CODE_TOKEN_SCOPE_INSUFFICIENT,
                blocked_by=BlockedBy.POLICY,
                details_safe=f"token lacks scopes: {', '.join(uncovered)}",
            )

    return GuardrailDecision(allowed=True, code=CODE_ALLOWED)
