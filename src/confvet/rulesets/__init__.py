from confvet.rulesets.registry import (
    BuildReport,
    RuleBuildResult,
    RulesetManager,
    UpdateResult,
    add_ruleset,
    update_ruleset,
)
from confvet.rulesets.store import RulesetStore

__all__ = [
    "BuildReport",
    "RuleBuildResult",
    "RulesetManager",
    "RulesetStore",
    "UpdateResult",
    "add_ruleset",
    "update_ruleset",
]
