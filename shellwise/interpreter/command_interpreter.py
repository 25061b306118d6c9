"""
Command Interpreter.

Turns a free-text request into concrete, risk-scored commands. A local
rule table is tried first (first match wins); when nothing matches the
query is sent to the completion service and its JSON answer is validated
and clamped. Unparseable input never raises: it yields a zero-confidence
ParsedCommand carrying warnings.
"""

import os
import re
import json
import shlex
import asyncio
import logging
from typing import Optional, List, Any, Dict

from .models import (
    Command, ParsedCommand, ParseSource, ParsingContext, RiskLevel, CommandCategory,
)
from .rules import InterpreterRule, default_rules
from shellwise.execution.security_policy import ELEVATION_COMMANDS
from shellwise.llm.completion_service import CompletionService

logger = logging.getLogger(__name__)

PATTERN_CONFIDENCE = 0.9
DEFAULT_COMPLETION_CONFIDENCE = 0.7

CATEGORY_DURATION_MULTIPLIERS = {
    CommandCategory.FILE_MANAGEMENT: 0.1,
    CommandCategory.GIT: 0.2,
    CommandCategory.PACKAGE_MANAGEMENT: 1.0,
    CommandCategory.PROCESS_MANAGEMENT: 0.1,
    CommandCategory.NETWORK: 0.5,
    CommandCategory.SYSTEM_INFO: 0.1,
    CommandCategory.DEVELOPMENT: 1.5,
    CommandCategory.TEXT_PROCESSING: 0.2,
    CommandCategory.CUSTOM: 0.5,
}

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


class CommandInterpreter:
    """
    Natural language to command translation.

    Args:
        completion_service: Fallback for queries no rule matches (optional)
        rules: Rule table in evaluation order (built-in rules when None)
    """

    def __init__(self, completion_service: Optional[CompletionService] = None,
                 rules: Optional[List[InterpreterRule]] = None):
        self.completion_service = completion_service
        self.rules = list(rules) if rules is not None else default_rules()

        logger.info(f"CommandInterpreter initialized:")
        logger.info(f"  Pattern rules: {len(self.rules)}")
        logger.info(f"  Completion fallback: {'enabled' if completion_service else 'disabled'}")

    def add_rule(self, rule: InterpreterRule, index: Optional[int] = None) -> None:
        if index is None:
            self.rules.append(rule)
        else:
            self.rules.insert(index, rule)

    def remove_rule(self, rule_id: str) -> bool:
        before = len(self.rules)
        self.rules = [r for r in self.rules if r.rule_id != rule_id]
        return len(self.rules) < before

    async def parse(self, query: str, context: ParsingContext) -> ParsedCommand:
        """
        Interpret ``query`` in ``context``.

        Returns:
            ParsedCommand; confidence 0 with warnings when nothing usable came out
        """
        query = query.strip()
        if not query:
            return self._fallback(query, "Empty query")

        parsed = self._match_rules(query, context)
        if parsed is not None:
            return parsed

        if self.completion_service is None:
            return self._fallback(query, "No pattern matched and no completion service is configured")

        prompt = self.build_context_prompt(query, context)
        try:
            raw = await asyncio.to_thread(self.completion_service.complete, prompt, context)
        except Exception as e:
            logger.error(f"Completion service failed for '{query}': {e}")
            return self._fallback(query, f"Completion service failed: {e}")

        return self._parse_completion(query, raw, context)

    def _match_rules(self, query: str, context: ParsingContext) -> Optional[ParsedCommand]:
        for rule in self.rules:
            match = rule.match(query)
            if not match:
                continue
            try:
                commands = rule.generator(match, context)
            except Exception as e:
                logger.error(f"Rule '{rule.rule_id}' generator failed: {e}")
                continue
            if not commands:
                logger.debug(f"Rule '{rule.rule_id}' matched but produced no commands")
                continue

            logger.info(f"Query matched rule '{rule.rule_id}'")
            return ParsedCommand.build(
                query, commands, PATTERN_CONFIDENCE, ParseSource.PATTERN,
                explanation=f"Matched pattern: {rule.description}",
                estimated_duration=self.estimate_duration(commands),
            )
        return None

    def build_context_prompt(self, query: str, context: ParsingContext) -> str:
        """Context block plus query, as sent to the completion service."""
        git = context.git_repository
        if git.is_repository:
            git_line = f"branch {git.current_branch or 'unknown'}"
            if git.has_changes:
                git_line += " (uncommitted changes)"
        else:
            git_line = "not a repository"

        lines = [
            f"Platform: {context.platform}",
            f"Current Directory: {context.current_directory}",
            f"Shell: {context.shell_type}",
            f"Project Type: {context.project_type or 'unknown'}",
            f"Package Manager: {context.preferences.preferred_package_manager}",
            f"Git: {git_line}",
        ]
        if context.recent_commands:
            lines.append(f"Recent Commands: {', '.join(context.recent_commands[-3:])}")
        lines.append(f"Elevation Allowed: {'yes' if context.preferences.allow_elevation else 'no'}")

        return "Context:\n" + "\n".join(lines) + f'\n\nQuery: "{query}"'

    def _parse_completion(self, query: str, raw: str, context: ParsingContext) -> ParsedCommand:
        data = self._load_json(raw)
        if data is None:
            return self._fallback(query, f"Unparsable completion response: {raw}")

        overall_confidence = None
        explanation = ""
        warnings: List[str] = []
        force_confirmation = False
        if isinstance(data, dict):
            items = data.get('commands')
            overall_confidence = data.get('confidence')
            explanation = str(data.get('explanation') or "")
            warnings.extend(str(w) for w in data.get('warnings') or [])
            force_confirmation = bool(data.get('requiresConfirmation', False))
        else:
            items = data

        if not isinstance(items, list):
            return self._fallback(query, f"Unparsable completion response: {raw}")

        commands = []
        confidences = []
        for item in items:
            command = self._normalize_item(item, context, warnings)
            if command is not None:
                commands.append(command)
                confidences.append(_clamp_confidence(item.get('confidence')))

        if not commands:
            return self._fallback(query, f"Completion response contained no usable commands: {raw}")

        if overall_confidence is not None:
            confidence = _clamp_confidence(overall_confidence)
        else:
            confidence = sum(confidences) / len(confidences)

        return ParsedCommand.build(
            query, commands, confidence, ParseSource.COMPLETION,
            warnings=warnings,
            explanation=explanation or "Interpreted by completion service",
            estimated_duration=self.estimate_duration(commands),
            force_confirmation=force_confirmation,
        )

    @staticmethod
    def _load_json(raw: Any) -> Optional[Any]:
        if not isinstance(raw, str):
            return None
        text = raw.strip()
        fenced = _CODE_FENCE.match(text)
        if fenced:
            text = fenced.group(1)
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
        embedded = _JSON_ARRAY.search(text)
        if embedded:
            try:
                return json.loads(embedded.group(0))
            except json.JSONDecodeError:
                return None
        return None

    def _normalize_item(self, item: Any, context: ParsingContext,
                        warnings: List[str]) -> Optional[Command]:
        """Validate one completion entry; None (plus a warning) when unusable."""
        if not isinstance(item, dict):
            warnings.append(f"Ignored non-object command entry: {item!r}")
            return None

        command_text = str(item.get('command') or "").strip()
        if not command_text:
            warnings.append("Ignored command entry without a command")
            return None

        try:
            parts = shlex.split(command_text)
        except ValueError:
            parts = command_text.split()

        extra_args = item.get('args')
        if not isinstance(extra_args, list):
            extra_args = []
        args = tuple(parts[1:]) + tuple(str(a) for a in extra_args)

        risk_level = RiskLevel.parse(item.get('riskLevel', item.get('risk_level')), RiskLevel.MEDIUM)
        elevated = bool(item.get('requiresElevation', False)) or os.path.basename(parts[0]) in ELEVATION_COMMANDS

        return Command(
            program=parts[0],
            args=args,
            description=str(item.get('description') or ""),
            category=CommandCategory.parse(item.get('category')),
            risk_level=risk_level,
            requires_elevation=elevated,
            timeout=context.preferences.default_timeout,
            working_directory=context.current_directory,
        )

    def _fallback(self, query: str, warning: str) -> ParsedCommand:
        logger.warning(f"Could not interpret '{query}': {warning[:200]}")
        return ParsedCommand.build(
            query, [], 0.0, ParseSource.FALLBACK,
            warnings=[warning],
            explanation="Command could not be parsed automatically. Manual review required.",
        )

    def estimate_duration(self, commands: List[Command]) -> float:
        """Rough seconds estimate: timeout scaled by a per-category factor."""
        return sum(
            command.timeout * CATEGORY_DURATION_MULTIPLIERS.get(command.category, 0.5)
            for command in commands
        )

    def get_command_suggestions(self, partial: str, context: ParsingContext,
                                limit: int = 5) -> List[str]:
        """Completions for a partially typed query from rule aliases and history."""
        partial = partial.strip().lower()
        if not partial:
            return []

        suggestions: List[str] = []
        for rule in self.rules:
            for alias in rule.aliases:
                if partial in alias.lower() and alias not in suggestions:
                    suggestions.append(alias)
        for recent in reversed(context.recent_commands):
            if recent.lower().startswith(partial) and recent not in suggestions:
                suggestions.append(recent)
        return suggestions[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'rules': [rule.rule_id for rule in self.rules],
            'completion_enabled': self.completion_service is not None,
        }


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_COMPLETION_CONFIDENCE
    return max(0.0, min(1.0, confidence))
