"""A small interpreter for the query subset the stores understand.

    SELECT * FROM c [WHERE c.<field> = <value> [AND ...]] [ORDER BY c.<field> [ASC|DESC]]

Values are `@parameters`, `'string literals'` or integer literals. Anything
else (OR, NOT, parentheses, other operators or clauses) is rejected with a
`QuerySyntaxError` rather than half understood.

Comparisons are made on the string form of both sides, so `c.position = '1'`
and `c.position = 1` match the same documents here. Cosmos DB compares types
as well, so pass values of the stored type when the result has to agree.
"""

from dataclasses import dataclass
import functools
import re
from typing import Any, Callable, Iterable, Mapping, TypeAlias, TypeVar

from domain.errors import QuerySyntaxError


D = TypeVar("D")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


FieldLookup: TypeAlias = Callable[[Any, str], Any]


_TOKENS = re.compile(
    r"""
    \s*(?:
        (?P<string>'[^']*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<param>@\w+)
      | (?P<name>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)
      | (?P<op><>|!=|<=|>=|\|\||\S)
    )
    """,
    re.VERBOSE,
)

_NAMED_CONSTRUCTS = {
    "OR",
    "NOT",
    "IN",
    "LIKE",
    "BETWEEN",
    "GROUP",
    "JOIN",
    "TOP",
    "DISTINCT",
    "VALUE",
    "OFFSET",
    "LIMIT",
    "HAVING",
}


@dataclass(frozen=True)
class Token:
    kind: str
    text: str

    @property
    def keyword(self) -> str:
        return self.text.upper() if self.kind == "name" else ""


@dataclass(frozen=True)
class Parameter:
    name: str


@dataclass(frozen=True)
class Constant:
    value: str | int


@dataclass(frozen=True)
class Condition:
    field: str
    value: Parameter | Constant


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    conditions: tuple[Condition, ...] = ()
    order_by: OrderBy | None = None

    def apply(
        self,
        documents: Iterable[D],
        parameters: Mapping[str, Any] | None,
        lookup: FieldLookup,
    ) -> list[D]:
        """Filter and sort `documents`.

        `lookup(doc, field)` returns the document's value for a lowercase
        field name or `MISSING`. Without ORDER BY the input order is kept.
        """
        targets = [_resolve(c.value, parameters or {}) for c in self.conditions]
        if any(t is MISSING for t in targets):
            return []

        fields = [c.field for c in self.conditions]
        results = [
            doc
            for doc in documents
            if all(_equal(lookup(doc, f), t) for f, t in zip(fields, targets))
        ]

        if self.order_by is not None:
            field = self.order_by.field
            results.sort(
                key=lambda doc: _sort_key(lookup(doc, field)),
                reverse=self.order_by.descending,
            )
        return results


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKENS.match(text, pos)
        if match is None or match.lastgroup is None:
            break
        tokens.append(Token(match.lastgroup, match.group(match.lastgroup)))
        pos = match.end()
    return tokens


@functools.lru_cache(maxsize=256)
def parse(text: str) -> Query:
    return _Parser(tokenize(text)).query()


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    @property
    def current(self) -> Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def advance(self) -> Token:
        tok = self.current
        if tok is None:
            raise QuerySyntaxError("end of query", "Query ended unexpectedly.")
        self.pos += 1
        return tok

    def accept(self, keyword: str) -> bool:
        tok = self.current
        if tok is not None and tok.keyword == keyword:
            self.pos += 1
            return True
        return False

    def expect(self, keyword: str) -> None:
        if not self.accept(keyword):
            raise self.unsupported(f"Expected {keyword}.")

    def unsupported(self, hint: str = "") -> QuerySyntaxError:
        tok = self.current
        if tok is None:
            construct = "end of query"
        elif tok.keyword in _NAMED_CONSTRUCTS:
            construct = tok.keyword
        elif tok.text in ("(", ")"):
            construct = "parentheses"
        elif tok.text == "'":
            construct = "unterminated string literal"
        else:
            construct = f"'{tok.text}'"
        message = f"Unsupported query construct: {construct}."
        return QuerySyntaxError(construct, f"{message} {hint}".strip())

    def query(self) -> Query:
        self.expect("SELECT")
        if self.current is None or self.current.text != "*":
            raise self.unsupported("Only SELECT * is supported.")
        self.advance()
        self.expect("FROM")
        alias = self.current
        if alias is None or alias.text != "c":
            raise self.unsupported("Only FROM c is supported.")
        self.advance()

        conditions: list[Condition] = []
        if self.accept("WHERE"):
            conditions.append(self.condition())
            while self.accept("AND"):
                conditions.append(self.condition())

        order_by = None
        if self.accept("ORDER"):
            self.expect("BY")
            field = self.field()
            descending = False
            if self.accept("DESC"):
                descending = True
            else:
                self.accept("ASC")
            order_by = OrderBy(field, descending)

        if self.current is not None:
            raise self.unsupported()
        return Query(tuple(conditions), order_by)

    def field(self) -> str:
        tok = self.current
        if tok is None or tok.kind != "name" or not tok.text.startswith("c."):
            raise self.unsupported("Fields are written as c.<name>.")
        name = tok.text[2:]
        if "." in name:
            raise QuerySyntaxError(
                f"nested field '{tok.text}'",
                f"Unsupported query construct: nested field '{tok.text}'.",
            )
        self.advance()
        return name.lower()

    def condition(self) -> Condition:
        field = self.field()
        tok = self.current
        if tok is None or tok.text != "=":
            raise self.unsupported("Only = comparisons are supported.")
        self.advance()

        tok = self.current
        if tok is None:
            raise self.unsupported()
        if tok.kind == "param":
            value: Parameter | Constant = Parameter(tok.text[1:])
        elif tok.kind == "string":
            value = Constant(tok.text[1:-1])
        elif tok.kind == "number" and "." not in tok.text:
            value = Constant(int(tok.text))
        else:
            raise self.unsupported("Values are @parameters, strings or integers.")
        self.advance()
        return Condition(field, value)


def _resolve(value: Parameter | Constant, parameters: Mapping[str, Any]) -> Any:
    if isinstance(value, Constant):
        return value.value
    for key in (f"@{value.name}", value.name):
        if key in parameters:
            return parameters[key]
    return MISSING


def _equal(actual: Any, target: Any) -> bool:
    if actual is MISSING:
        return False
    if actual is None or target is None:
        return actual is None and target is None
    return str(actual) == str(target)


def _sort_key(value: Any) -> tuple[int, Any]:
    # undefined < null < boolean < number < string
    if value is MISSING:
        return (0, 0)
    if value is None:
        return (1, 0)
    if isinstance(value, bool):
        return (2, value)
    if isinstance(value, (int, float)):
        return (3, value)
    return (4, str(value))
