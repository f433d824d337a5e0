"""Allowlist policy for tester-proposed commands.

Commands come from an LLM, so every string is classified before anything is
spawned: shell metacharacters and known-dangerous patterns are rejected
outright, and whatever remains must start with an allowed prefix token for
token.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import re
import shlex
from typing import Any, Iterable

from awe_roundtable.domain.models import TesterBlockedPolicy

DEFAULT_ALLOWED_PREFIXES: tuple[str, ...] = (
    'npm test',
    'npm run test',
    'node --test',
    'pnpm test',
    'yarn test',
)
SAFE_ALLOWLIST_BINARIES = frozenset({'npm', 'node', 'pnpm', 'yarn', 'python', 'python3', 'pytest'})
MAX_BLOCKED_RETRIES = 1

DISALLOWED_SHELL_SYNTAX_RE = re.compile(r'(;|&&|\|\||\||\$\(|`|\n|\r|\t)')
_MALICIOUS_PATTERNS = (
    re.compile(r'\brm\s+-[a-z]*r[a-z]*f\b|\brm\s+-[a-z]*f[a-z]*r\b', re.IGNORECASE),
    re.compile(r'\b(curl|wget)\b.*\|\s*(ba)?sh\b', re.IGNORECASE),
    re.compile(r'child_process', re.IGNORECASE),
    re.compile(r'\bmkfs\b|\bdd\s+if=', re.IGNORECASE),
    re.compile(r':\(\)\s*\{'),
)
_INLINE_EVAL_FLAGS = {
    'node': {'-e', '--eval', '-p', '--print'},
    'python': {'-c'},
    'python3': {'-c'},
}

BLOCK_EMPTY = 'empty_command'
BLOCK_INJECTION = 'command_injection_characters'
BLOCK_PARSE_ERROR = 'parse_error'
BLOCK_MALICIOUS = 'malicious_command'
BLOCK_ALLOWLIST_MISMATCH = 'allowlist_mismatch'

SEVERITY_NORMAL = 'normal'
SEVERITY_MALICIOUS = 'malicious'


def tokenize_command(command: str) -> list[str]:
    """Split like a POSIX shell would; unterminated quotes raise ValueError."""
    return shlex.split(str(command or ''), posix=True)


@dataclass(frozen=True)
class AllowedPrefix:
    text: str
    tokens: tuple[str, ...]


@dataclass(frozen=True)
class AllowlistResolution:
    prefixes: tuple[str, ...]
    rules: tuple[AllowedPrefix, ...]
    rejected: tuple[dict[str, str], ...] = ()
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            'prefixes': list(self.prefixes),
            'rejected': [dict(item) for item in self.rejected],
            'used_fallback': self.used_fallback,
        }


@dataclass(frozen=True)
class CommandClassification:
    command: str
    allowed: bool
    blocked_reason: str | None = None
    blocked_severity: str | None = None
    retryable: bool = False
    command_argv0: str | None = None
    matched_prefix: str | None = None
    argv: tuple[str, ...] = field(default=(), compare=False)


def normalize_allowed_prefixes(prefixes: Iterable[str] | None) -> AllowlistResolution:
    rules: list[AllowedPrefix] = []
    rejected: list[dict[str, str]] = []
    seen: set[tuple[str, ...]] = set()
    for raw in list(prefixes or []):
        text = str(raw or '').strip()
        if not text:
            continue
        if DISALLOWED_SHELL_SYNTAX_RE.search(text):
            rejected.append({'prefix': text, 'reason': 'disallowed_shell_syntax'})
            continue
        try:
            tokens = tuple(tokenize_command(text))
        except ValueError:
            rejected.append({'prefix': text, 'reason': 'unterminated_quote'})
            continue
        if not tokens:
            rejected.append({'prefix': text, 'reason': 'empty_prefix'})
            continue
        if tokens[0] not in SAFE_ALLOWLIST_BINARIES:
            rejected.append({'prefix': text, 'reason': 'unsupported_binary'})
            continue
        if tokens in seen:
            continue
        seen.add(tokens)
        rules.append(AllowedPrefix(text=shlex.join(tokens), tokens=tokens))

    used_fallback = False
    if not rules:
        used_fallback = True
        rules = [
            AllowedPrefix(text=item, tokens=tuple(tokenize_command(item)))
            for item in DEFAULT_ALLOWED_PREFIXES
        ]
    return AllowlistResolution(
        prefixes=tuple(rule.text for rule in rules),
        rules=tuple(rules),
        rejected=tuple(rejected),
        used_fallback=used_fallback,
    )


def _looks_malicious(command: str, argv: list[str]) -> bool:
    if any(pattern.search(command) for pattern in _MALICIOUS_PATTERNS):
        return True
    if not argv:
        return False
    flags = _INLINE_EVAL_FLAGS.get(argv[0].lower())
    if not flags:
        return False
    return any(token in flags or token.split('=', 1)[0] in flags for token in argv[1:])


def classify_command(command: str, rules: Iterable[AllowedPrefix]) -> CommandClassification:
    text = str(command or '').strip()
    if not text:
        return CommandClassification(
            command=text,
            allowed=False,
            blocked_reason=BLOCK_EMPTY,
            blocked_severity=SEVERITY_NORMAL,
            retryable=False,
        )
    if DISALLOWED_SHELL_SYNTAX_RE.search(text):
        return CommandClassification(
            command=text,
            allowed=False,
            blocked_reason=BLOCK_INJECTION,
            blocked_severity=SEVERITY_MALICIOUS,
            retryable=False,
        )
    try:
        argv = tokenize_command(text)
    except ValueError:
        return CommandClassification(
            command=text,
            allowed=False,
            blocked_reason=BLOCK_PARSE_ERROR,
            blocked_severity=SEVERITY_NORMAL,
            retryable=False,
        )
    argv0 = argv[0] if argv else None
    if _looks_malicious(text, argv):
        return CommandClassification(
            command=text,
            allowed=False,
            blocked_reason=BLOCK_MALICIOUS,
            blocked_severity=SEVERITY_MALICIOUS,
            retryable=False,
            command_argv0=argv0,
            argv=tuple(argv),
        )
    for rule in rules:
        if tuple(argv[:len(rule.tokens)]) == rule.tokens:
            return CommandClassification(
                command=text,
                allowed=True,
                command_argv0=argv0,
                matched_prefix=rule.text,
                argv=tuple(argv),
            )
    return CommandClassification(
        command=text,
        allowed=False,
        blocked_reason=BLOCK_ALLOWLIST_MISMATCH,
        blocked_severity=SEVERITY_NORMAL,
        retryable=True,
        command_argv0=argv0,
        argv=tuple(argv),
    )


def normalize_tester_blocked_policy(value: str | None) -> str:
    text = str(value or '').strip().lower()
    if text == TesterBlockedPolicy.RESILIENT.value:
        return TesterBlockedPolicy.RESILIENT.value
    return TesterBlockedPolicy.STRICT.value


def should_retry_blocked_commands(policy: str | None, summary: dict[str, Any], retry_count: int) -> bool:
    if normalize_tester_blocked_policy(policy) != TesterBlockedPolicy.RESILIENT.value:
        return False
    if int(retry_count) >= MAX_BLOCKED_RETRIES:
        return False
    blocked = int(summary.get('blocked_commands') or 0)
    if blocked <= 0 or int(summary.get('runnable_commands') or 0) > 0:
        return False
    if int(summary.get('malicious_blocked_commands') or 0) > 0:
        return False
    return int(summary.get('retryable_blocked_commands') or 0) == blocked


def should_finalize_as_tester_command_blocked(summary: dict[str, Any]) -> bool:
    return int(summary.get('blocked_commands') or 0) > 0 and int(summary.get('runnable_commands') or 0) == 0


def build_tester_blocked_retry_feedback(blocked_commands: Iterable[str], allowed_prefixes: Iterable[str]) -> str:
    blocked = [str(item) for item in blocked_commands if str(item).strip()]
    allowed = [str(item) for item in allowed_prefixes if str(item).strip()]
    lines = [
        'Your previous commands were rejected by the command allowlist and did not run.',
        'Blocked commands:',
    ]
    lines.extend(f'- {item}' for item in blocked or ['(none)'])
    lines.append('Allowed command prefixes:')
    lines.extend(f'- {item}' for item in allowed)
    lines.extend([
        'Every command must start with one of the allowed prefixes, token for token.',
        'Do not use shell operators (;, &&, ||, |, $(), backticks) or inline code evaluation.',
        'Examples of accepted commands:',
        '- node --test tests/**/*.test.js',
        '- npm test -- --grep "keyword"',
        'Return the same JSON schema with corrected commands.',
    ])
    return '\n'.join(lines)


__all__ = [
    'AllowedPrefix',
    'AllowlistResolution',
    'BLOCK_ALLOWLIST_MISMATCH',
    'BLOCK_EMPTY',
    'BLOCK_INJECTION',
    'BLOCK_MALICIOUS',
    'BLOCK_PARSE_ERROR',
    'CommandClassification',
    'DEFAULT_ALLOWED_PREFIXES',
    'DISALLOWED_SHELL_SYNTAX_RE',
    'MAX_BLOCKED_RETRIES',
    'SAFE_ALLOWLIST_BINARIES',
    'SEVERITY_MALICIOUS',
    'SEVERITY_NORMAL',
    'build_tester_blocked_retry_feedback',
    'classify_command',
    'normalize_allowed_prefixes',
    'normalize_tester_blocked_policy',
    'should_finalize_as_tester_command_blocked',
    'should_retry_blocked_commands',
    'tokenize_command',
]
