"""
Batch Code Rules: Per-site formats that new batch codes must follow.

A rule's definition carries a ``format`` built from literal text and
placeholders:

    {SitePrefix}, {StrainCode}   one or more letters or digits
    {YYMMDD}                     six digits
    {YYYYMMDD}                   eight digits
    {Seq}                        one or more digits
    {Anything}                   any non-empty text

Matching is anchored and case-insensitive. When a site has no active rule,
only the length limit applies. Otherwise a code is valid once it matches any
active rule, checked oldest first.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import ErrorCode, Outcome
from db.models import Batch, BatchCodeRule, CodeResetPolicy

logger = structlog.get_logger()

MAX_BATCH_CODE_LENGTH = 100
MAX_RULE_NAME_LENGTH = 100

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_TOKEN_PATTERNS = {
    "SitePrefix": "[A-Z0-9]+",
    "StrainCode": "[A-Z0-9]+",
    "YYMMDD": "[0-9]{6}",
    "YYYYMMDD": "[0-9]{8}",
    "Seq": "[0-9]+",
}


def format_to_pattern(code_format: str) -> re.Pattern:
    """Compile a rule format into an anchored, case-insensitive regex."""
    parts = []
    position = 0
    for match in _PLACEHOLDER.finditer(code_format):
        parts.append(re.escape(code_format[position : match.start()]))
        parts.append(_TOKEN_PATTERNS.get(match.group(1), ".+"))
        position = match.end()
    parts.append(re.escape(code_format[position:]))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE)


def _definition_problem(rule_definition: dict[str, Any] | None) -> str | None:
    if not isinstance(rule_definition, dict):
        return "Rule definition must be an object"
    code_format = rule_definition.get("format")
    if not isinstance(code_format, str) or not code_format.strip():
        return "Rule definition requires a non-empty 'format'"
    return None


def _name_problem(name: str | None) -> str | None:
    if not name or not name.strip():
        return "Rule name is required"
    if len(name) > MAX_RULE_NAME_LENGTH:
        return f"Rule name cannot exceed {MAX_RULE_NAME_LENGTH} characters"
    return None


@dataclass(frozen=True)
class CodeVerdict:
    valid: bool
    reason: str | None = None
    rule_id: uuid.UUID | None = None
    rule_name: str | None = None


class BatchCodeRules:
    """Batch code rule configuration and validation for a site."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Queries ────────────────────────────────────────────────────────────

    async def get_rule(self, site_id: uuid.UUID, rule_id: uuid.UUID) -> BatchCodeRule | None:
        result = await self.db.execute(
            select(BatchCodeRule).where(BatchCodeRule.site_id == site_id, BatchCodeRule.rule_id == rule_id)
        )
        return result.scalar_one_or_none()

    async def list_rules(self, site_id: uuid.UUID, active_only: bool = False) -> list[BatchCodeRule]:
        query = select(BatchCodeRule).where(BatchCodeRule.site_id == site_id)
        if active_only:
            query = query.where(BatchCodeRule.is_active.is_(True))
        result = await self.db.execute(query.order_by(BatchCodeRule.created_at, BatchCodeRule.name))
        return list(result.scalars().all())

    async def _name_taken(self, site_id: uuid.UUID, name: str, exclude: uuid.UUID | None = None) -> bool:
        query = select(BatchCodeRule.rule_id).where(BatchCodeRule.site_id == site_id, BatchCodeRule.name == name)
        if exclude is not None:
            query = query.where(BatchCodeRule.rule_id != exclude)
        result = await self.db.execute(query)
        return result.first() is not None

    # ── Mutations ──────────────────────────────────────────────────────────

    async def create_rule(
        self,
        site_id: uuid.UUID,
        name: str,
        rule_definition: dict[str, Any],
        user_id: uuid.UUID,
        reset_policy: CodeResetPolicy = CodeResetPolicy.NEVER,
        is_active: bool = True,
    ) -> Outcome[BatchCodeRule]:
        problem = _name_problem(name) or _definition_problem(rule_definition)
        if problem:
            return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)
        name = name.strip()
        if await self._name_taken(site_id, name):
            return Outcome.failure(ErrorCode.DUPLICATE_KEY, f"Rule '{name}' already exists for this site")

        rule = BatchCodeRule(
            site_id=site_id,
            name=name,
            rule_definition=dict(rule_definition),
            reset_policy=reset_policy,
            is_active=is_active,
            created_by=user_id,
            updated_by=user_id,
        )
        self.db.add(rule)
        await self.db.flush()

        logger.info("batch_code_rule.created", site_id=str(site_id), rule_id=str(rule.rule_id), name=name)
        return Outcome.success(rule)

    async def update_rule(
        self,
        site_id: uuid.UUID,
        rule_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        name: str | None = None,
        rule_definition: dict[str, Any] | None = None,
        reset_policy: CodeResetPolicy | None = None,
    ) -> Outcome[BatchCodeRule]:
        if name is not None:
            problem = _name_problem(name)
            if problem:
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)
        if rule_definition is not None:
            problem = _definition_problem(rule_definition)
            if problem:
                return Outcome.failure(ErrorCode.VALIDATION_FAILED, problem)

        rule = await self.get_rule(site_id, rule_id)
        if rule is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Rule {rule_id} not found")
        if name is not None:
            name = name.strip()
            if await self._name_taken(site_id, name, exclude=rule_id):
                return Outcome.failure(ErrorCode.DUPLICATE_KEY, f"Rule '{name}' already exists for this site")
            rule.name = name
        if rule_definition is not None:
            rule.rule_definition = dict(rule_definition)
        if reset_policy is not None:
            rule.reset_policy = reset_policy
        rule.updated_by = user_id
        rule.updated_at = datetime.utcnow()
        await self.db.flush()
        return Outcome.success(rule)

    async def set_active(
        self,
        site_id: uuid.UUID,
        rule_id: uuid.UUID,
        is_active: bool,
        user_id: uuid.UUID,
    ) -> Outcome[BatchCodeRule]:
        rule = await self.get_rule(site_id, rule_id)
        if rule is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Rule {rule_id} not found")
        rule.is_active = is_active
        rule.updated_by = user_id
        rule.updated_at = datetime.utcnow()
        await self.db.flush()
        logger.info("batch_code_rule.toggled", rule_id=str(rule_id), is_active=is_active)
        return Outcome.success(rule)

    async def activate(self, site_id, rule_id, user_id) -> Outcome[BatchCodeRule]:
        return await self.set_active(site_id, rule_id, True, user_id)

    async def deactivate(self, site_id, rule_id, user_id) -> Outcome[BatchCodeRule]:
        return await self.set_active(site_id, rule_id, False, user_id)

    async def delete_rule(self, site_id: uuid.UUID, rule_id: uuid.UUID) -> Outcome[uuid.UUID]:
        rule = await self.get_rule(site_id, rule_id)
        if rule is None:
            return Outcome.failure(ErrorCode.NOT_FOUND, f"Rule {rule_id} not found")
        await self.db.delete(rule)
        await self.db.flush()
        logger.info("batch_code_rule.deleted", site_id=str(site_id), rule_id=str(rule_id))
        return Outcome.success(rule_id)

    # ── Validation ─────────────────────────────────────────────────────────

    async def validate_batch_code(self, site_id: uuid.UUID, batch_code: str | None) -> CodeVerdict:
        if not batch_code or not batch_code.strip():
            return CodeVerdict(valid=False, reason="Batch code is required")
        batch_code = batch_code.strip()
        if len(batch_code) > MAX_BATCH_CODE_LENGTH:
            return CodeVerdict(valid=False, reason=f"Batch code cannot exceed {MAX_BATCH_CODE_LENGTH} characters")

        rules = await self.list_rules(site_id, active_only=True)
        if not rules:
            return CodeVerdict(valid=True)

        for rule in rules:
            code_format = (rule.rule_definition or {}).get("format")
            if not isinstance(code_format, str) or not code_format.strip():
                continue
            if format_to_pattern(code_format).match(batch_code):
                return CodeVerdict(valid=True, rule_id=rule.rule_id, rule_name=rule.name)

        return CodeVerdict(
            valid=False,
            reason=f"Batch code '{batch_code}' does not match any active code rule",
        )

    async def is_batch_code_unique(
        self,
        site_id: uuid.UUID,
        batch_code: str,
        exclude_batch_id: uuid.UUID | None = None,
    ) -> bool:
        query = select(Batch.batch_id).where(Batch.site_id == site_id, Batch.batch_code == batch_code.strip())
        if exclude_batch_id is not None:
            query = query.where(Batch.batch_id != exclude_batch_id)
        result = await self.db.execute(query)
        return result.first() is None
