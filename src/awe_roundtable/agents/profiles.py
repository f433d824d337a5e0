from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping

from awe_roundtable.domain.models import ROLES


@dataclass(frozen=True)
class RoleProfile:
    role: str
    display_name: str
    role_title: str
    nickname: str

    def to_dict(self) -> dict[str, str]:
        return {
            'role': self.role,
            'display_name': self.display_name,
            'role_title': self.role_title,
            'nickname': self.nickname,
        }


DEFAULT_ROLE_PROFILES: dict[str, RoleProfile] = {
    'coder': RoleProfile(
        role='coder',
        display_name='Coder',
        role_title='implementation engineer who owns the code changes',
        nickname='coder',
    ),
    'reviewer': RoleProfile(
        role='reviewer',
        display_name='Reviewer',
        role_title='code reviewer who guards correctness and security',
        nickname='reviewer',
    ),
    'tester': RoleProfile(
        role='tester',
        display_name='Tester',
        role_title='test engineer who proves the change works',
        nickname='tester',
    ),
}


def resolve_role_profiles(overrides: Mapping[str, Any] | None = None) -> dict[str, RoleProfile]:
    profiles = dict(DEFAULT_ROLE_PROFILES)
    for role, raw in dict(overrides or {}).items():
        if role not in profiles:
            continue
        if isinstance(raw, RoleProfile):
            profiles[role] = replace(raw, role=role)
            continue
        if not isinstance(raw, Mapping):
            continue
        base = profiles[role]
        profiles[role] = RoleProfile(
            role=role,
            display_name=str(raw.get('display_name') or base.display_name).strip(),
            role_title=str(raw.get('role_title') or base.role_title).strip(),
            nickname=str(raw.get('nickname') or base.nickname).strip().lstrip('@'),
        )
    return profiles


def profile_for(role: str, profiles: Mapping[str, RoleProfile] | None = None) -> RoleProfile:
    resolved = dict(profiles or DEFAULT_ROLE_PROFILES)
    return resolved.get(role) or DEFAULT_ROLE_PROFILES[role]


def peers_for(role: str, profiles: Mapping[str, RoleProfile] | None = None) -> list[RoleProfile]:
    return [profile_for(other, profiles) for other in ROLES if other != role]


def render_persona(role: str, profiles: Mapping[str, RoleProfile] | None = None) -> str:
    me = profile_for(role, profiles)
    lines = [
        f'You are {me.display_name} (@{me.nickname}), the {me.role_title}, in a three-agent roundtable.',
        'Teammates:',
    ]
    for peer in peers_for(role, profiles):
        lines.append(f'- {peer.display_name} (@{peer.nickname}): {peer.role_title}')
    lines.append('Refer to teammates only by their @nickname. Never speak on their behalf.')
    return '\n'.join(lines)


__all__ = [
    'DEFAULT_ROLE_PROFILES',
    'RoleProfile',
    'peers_for',
    'profile_for',
    'render_persona',
    'resolve_role_profiles',
]
