from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Position:
    """A 1-indexed point within a document."""

    line: int
    column: int


@dataclass(frozen=True, slots=True)
class Location:
    start: Position
    end: Position


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A single lint finding returned by a rule's ``execute`` call.

    Offsets are reported exactly as the rule produced them.  ``metadata`` is
    an open map for rule-specific extensions such as a severity label.
    """

    location: Location
    suggestion: str = ""
    remediation: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def at(
        cls,
        line: int,
        column: int = 1,
        *,
        end_line: int | None = None,
        end_column: int | None = None,
        suggestion: str = "",
        remediation: str = "",
        metadata: dict[str, str] | None = None,
    ) -> "Diagnostic":
        """Build a diagnostic from plain coordinates.

        The end position defaults to the start position.
        """
        start = Position(line, column)
        end = Position(
            end_line if end_line is not None else line,
            end_column if end_column is not None else column,
        )
        return cls(
            location=Location(start, end),
            suggestion=suggestion,
            remediation=remediation,
            metadata=dict(metadata or {}),
        )

    @property
    def line(self) -> int:
        return self.location.start.line

    @property
    def column(self) -> int:
        return self.location.start.column
