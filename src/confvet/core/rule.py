from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class RuleDescriptor:
    """Metadata a rule reports about itself over ``describe``.

    ``enabled`` is the rule author's default.  It only decides the stored
    flag the first time a rule is registered; afterwards the user's choice
    wins.
    """

    name: str
    short: str
    long: str = ""
    link: str = ""
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class Rule:
    """A single lint check registered within a ruleset.

    Example::

        Rule(
            id="1f0e4",
            name="no_foo",
            short="Attribute 'foo' is not allowed",
            link="https://example.com/rules/no_foo",
        )
    """

    id: str
    name: str
    short: str
    long: str = ""
    link: str = ""
    enabled: bool = True

    @classmethod
    def from_descriptor(cls, rule_id: str, descriptor: RuleDescriptor) -> "Rule":
        return cls(
            id=rule_id,
            name=descriptor.name,
            short=descriptor.short,
            long=descriptor.long,
            link=descriptor.link,
            enabled=descriptor.enabled,
        )

    def __str__(self) -> str:
        return f"[{self.id}] {self.name}"


@dataclass(frozen=True, slots=True)
class Ruleset:
    """A named, versioned bundle of rules sharing one source repository."""

    name: str
    version: str
    repository: str
    enabled: bool = True
    rules: tuple[Rule, ...] = field(default=())

    def get_rule(self, rule_id: str) -> Rule | None:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @property
    def enabled_rules(self) -> list[Rule]:
        return [r for r in self.rules if r.enabled]


@dataclass(frozen=True, slots=True)
class RulesetManifest:
    """Contents of the ``ruleset.toml`` file at the root of a ruleset repository."""

    name: str
    version: str
