from awe_roundtable.agents.base import AgentCall
from awe_roundtable.agents.coder import CoderResult, run_coder
from awe_roundtable.agents.parsing import extract_json_object, repair_unescaped_quotes
from awe_roundtable.agents.profiles import RoleProfile, resolve_role_profiles
from awe_roundtable.agents.reviewer import ReviewerResult, run_reviewer, validate_review_schema
from awe_roundtable.agents.tester import TesterResult, run_tester, validate_tester_schema

__all__ = [
    'AgentCall',
    'CoderResult',
    'ReviewerResult',
    'RoleProfile',
    'TesterResult',
    'extract_json_object',
    'repair_unescaped_quotes',
    'resolve_role_profiles',
    'run_coder',
    'run_reviewer',
    'run_tester',
    'validate_review_schema',
    'validate_tester_schema',
]
