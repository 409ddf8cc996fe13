"""
Model Specification Module
==========================

Declarative description of a candidate model: a response column and a list
of terms over predictor columns.

A term is a tuple of column names. A single name is a main effect, several
names form an interaction. Specifications are plain data; they are either
built directly or parsed from the familiar formula text, e.g.::

    Specification.build("cnt", "temp", ("temp", "hum"))
    parse_specification("cnt ~ temp + temp:hum")
    parse_specification("cnt ~ temp * hum")      # temp + hum + temp:hum
    parse_specification("cnt ~ .")               # every other column
    parse_specification("cnt ~ . - casual")      # every other column but one
    parse_specification("cnt ~ 1")               # intercept only

Formula text is parsed by patsy, and a resolved specification renders back
to a patsy ``ModelDesc`` for design matrix construction.

Functions:
    - parse_specification: Text form -> Specification
    - as_specification: Accept either form
"""

import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Sequence, Tuple, Union

from patsy import INTERCEPT, LookupFactor, ModelDesc, PatsyError, Term as PatsyTerm

from .exceptions import ConfigurationError

Term = Tuple[str, ...]

_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")

# patsy has no '.' operator; the wildcard is parsed as this placeholder column
_WILDCARD = "__all_predictors__"
_WILDCARD_TOKEN = re.compile(r"(?<![\w.])\.(?![\w.])")


def _normalize_term(term: Union[str, Sequence[str]]) -> Term:
    if isinstance(term, str):
        term = (term,)
    term = tuple(term)
    if not term:
        raise ConfigurationError("Empty term in specification")
    if len(set(term)) != len(term):
        raise ConfigurationError(f"Repeated column in interaction term: {':'.join(term)}")
    return term


def _same_term(a: Term, b: Term) -> bool:
    return len(a) == len(b) and set(a) == set(b)


def _dedupe(terms: Iterable[Union[str, Sequence[str]]]) -> Tuple[Term, ...]:
    unique: List[Term] = []
    for term in terms:
        term = _normalize_term(term)
        if not any(_same_term(term, seen) for seen in unique):
            unique.append(term)
    return tuple(unique)


@dataclass(frozen=True)
class Specification:
    """
    A candidate model over predictor columns.

    Attributes:
        response: Name of the response column
        terms: Main effects and interactions, in declaration order
        intercept: Whether the model includes an intercept
        all_predictors: Wildcard; expands to every non-response column
        excluded: Terms removed from the wildcard expansion
    """

    response: str
    terms: Tuple[Term, ...] = ()
    intercept: bool = True
    all_predictors: bool = False
    excluded: Tuple[Term, ...] = ()

    def __post_init__(self):
        if not _NAME_PATTERN.match(self.response):
            raise ConfigurationError(f"Invalid response name: {self.response!r}")
        for term in self.terms + self.excluded:
            for name in term:
                if not _NAME_PATTERN.match(name):
                    raise ConfigurationError(f"Invalid column name in term: {name!r}")
        if self.excluded and not self.all_predictors:
            raise ConfigurationError("Excluded terms only apply to the '.' wildcard")
        if not self.intercept and not self.terms and not self.all_predictors:
            raise ConfigurationError(f"Specification for {self.response!r} has no terms and no intercept")

    @classmethod
    def build(
        cls,
        response: str,
        *terms: Union[str, Sequence[str]],
        intercept: bool = True,
        all_predictors: bool = False,
        excluded: Sequence[Union[str, Sequence[str]]] = ()
    ) -> 'Specification':
        """
        Build a specification from main effects and interaction tuples.

        Duplicate terms are dropped, keeping the first occurrence.
        """
        return cls(
            response=response,
            terms=_dedupe(terms),
            intercept=intercept,
            all_predictors=all_predictors,
            excluded=_dedupe(excluded)
        )

    @classmethod
    def from_model_desc(cls, desc: ModelDesc, source: str = "") -> 'Specification':
        """
        Convert a parsed patsy model description.

        Every factor must be a bare column name; a factor named after the
        wildcard placeholder sets ``all_predictors``.

        Raises:
            ConfigurationError: On transformed factors or a malformed response
        """
        source = source or desc.describe()
        if len(desc.lhs_termlist) != 1 or len(desc.lhs_termlist[0].factors) != 1:
            raise ConfigurationError(f"Specification needs a single response column: {source!r}")
        response = _term_names(desc.lhs_termlist[0], source)[0]

        terms: List[Term] = []
        all_predictors = False
        for term in desc.rhs_termlist:
            if term == INTERCEPT:
                continue
            names = _term_names(term, source)
            if _WILDCARD in names:
                if len(names) > 1:
                    raise ConfigurationError(f"The '.' wildcard cannot be part of an interaction: {source!r}")
                all_predictors = True
            else:
                terms.append(names)

        return cls(
            response=response,
            terms=tuple(terms),
            intercept=INTERCEPT in desc.rhs_termlist,
            all_predictors=all_predictors
        )

    def model_desc(self) -> ModelDesc:
        """
        Render as a patsy ``ModelDesc`` over column lookups.

        Raises:
            ConfigurationError: If the wildcard has not been resolved
        """
        if self.all_predictors:
            raise ConfigurationError(f"Resolve the wildcard of '{self}' against a dataset first")

        rhs = [INTERCEPT] if self.intercept else []
        rhs.extend(PatsyTerm([LookupFactor(name) for name in term]) for term in self.terms)
        return ModelDesc([PatsyTerm([LookupFactor(self.response)])], rhs)

    @property
    def is_intercept_only(self) -> bool:
        return not self.terms and not self.all_predictors

    def referenced_columns(self) -> List[str]:
        """Predictor columns named explicitly, in first-use order."""
        columns: List[str] = []
        for term in self.terms:
            for name in term:
                if name not in columns:
                    columns.append(name)
        return columns

    def resolve(self, columns: Iterable[str]) -> 'Specification':
        """
        Expand the wildcard against a concrete column list.

        Wildcard main effects come first in column order, followed by the
        explicit terms that are not already covered. Excluded terms are
        dropped from the expansion.
        """
        if not self.all_predictors:
            return self

        expanded: List[Term] = [
            (c,) for c in columns
            if c != self.response and not any(_same_term((c,), e) for e in self.excluded)
        ]
        for term in self.terms:
            if not any(_same_term(term, seen) for seen in expanded):
                expanded.append(term)
        return replace(self, terms=tuple(expanded), all_predictors=False, excluded=())

    def validate(self, columns: Iterable[str], context: str = "dataset") -> None:
        """
        Check that the response and every referenced column exist.

        Columns removed from the wildcard must exist as well.

        Raises:
            ConfigurationError: Naming the specification and missing columns
        """
        available = set(columns)
        named = [self.response] + self.referenced_columns()
        named += [name for term in self.excluded for name in term if name not in named]
        missing = [c for c in named if c not in available]
        if missing:
            raise ConfigurationError(
                f"Specification '{self}' references unknown column(s) {missing} in {context}"
            )

    def __str__(self) -> str:
        parts = []
        if self.all_predictors:
            parts.append(".")
        parts.extend(":".join(term) for term in self.terms)
        if not parts:
            return f"{self.response} ~ 1"
        rhs = " + ".join(parts)
        for term in self.excluded:
            rhs += f" - {':'.join(term)}"
        if not self.intercept:
            rhs += " - 1"
        return f"{self.response} ~ {rhs}"


def _term_names(term: PatsyTerm, source: str) -> Term:
    names = tuple(factor.name() for factor in term.factors)
    for name in names:
        if not _NAME_PATTERN.match(name):
            raise ConfigurationError(f"Invalid column name {name!r} in {source!r}")
    return names


def _parse(formula: str, source: str) -> ModelDesc:
    try:
        return ModelDesc.from_formula(formula)
    except PatsyError as exc:
        raise ConfigurationError(f"Malformed specification {source!r}: {exc}") from exc


def parse_specification(text: str) -> Specification:
    """
    Parse the text form ``response ~ term + term ...``.

    Supports ``+``, ``-`` (remove a term), ``:`` (interaction), ``*``
    (all main effects and interactions of its factors), ``.`` (all
    predictors), ``1`` and ``- 1``/``0`` for the intercept.

    Raises:
        ConfigurationError: If the text is malformed
    """
    if text.count("~") != 1:
        raise ConfigurationError(f"Specification must contain exactly one '~': {text!r}")

    lhs, rhs = (side.strip() for side in text.split("~"))
    if not lhs:
        raise ConfigurationError(f"Specification has no response: {text!r}")
    if not rhs:
        raise ConfigurationError(f"Specification has no right-hand side: {text!r}")

    rhs = _WILDCARD_TOKEN.sub(_WILDCARD, rhs)
    desc = _parse(f"{lhs} ~ {rhs}", text)
    specification = Specification.from_model_desc(desc, text)

    if "-" not in rhs:
        return specification

    # Terms present once every '-' reads as '+' but absent from the parse
    # are the removed ones
    added = _parse(f"{lhs} ~ {rhs.replace('-', '+')}", text)
    excluded: List[Term] = []
    for term in added.rhs_termlist:
        if term == INTERCEPT or term in desc.rhs_termlist:
            continue
        names = _term_names(term, text)
        if _WILDCARD in names:
            raise ConfigurationError(f"Cannot remove the wildcard: {text!r}")
        excluded.append(names)

    if not specification.all_predictors:
        return specification
    return replace(specification, excluded=tuple(excluded))


def as_specification(value: Union[str, Specification]) -> Specification:
    if isinstance(value, Specification):
        return value
    if isinstance(value, str):
        return parse_specification(value)
    raise ConfigurationError(f"Unsupported specification type: {type(value).__name__}")
