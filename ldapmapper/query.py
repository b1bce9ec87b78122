"""
Queries: expression trees, their translation to LDAP filters, and the
QuerySet-like :py:class:`Query`.

An expression is a tree of :py:class:`Expression` nodes.  You can build one
directly:

.. code-block:: python

    expr = And(
        Comparison("==", FieldRef("department"), Parameter("dept")),
        Not(StartsWith(FieldRef("uid"), Value("svc-"))),
    )
    Person.objects.query(expr, dept="sales")

or let :py:meth:`Query.filter` build one from Django-style lookups:

.. code-block:: python

    Person.objects.filter(department="sales", uid__startswith="f")

:py:func:`compile_filter` turns as much of the tree as it can into an
RFC 4515 filter string, and returns ``None`` if any part of the tree has no
LDAP equivalent.  Either way the entries the server returns are checked again
in memory with :py:func:`evaluate`, because the translation is allowed to
match more than the expression does (strict ``<`` and ``>``, for example).
"""

import logging
import operator
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, Optional, cast

from ldapmapper import ldap

from .exceptions import DatastoreError, QueryError

if TYPE_CHECKING:
    from .fields import Field
    from .managers import LdapManager
    from .models import Model

logger = logging.getLogger("django-ldapmapper")


# -----------------------
# Expression tree
# -----------------------


class Expression:
    """
    Base class for expression nodes.  Predicates can be combined with ``&``,
    ``|`` and ``~``.
    """

    def __and__(self, other: "Expression") -> "And":
        return And(self, other)

    def __or__(self, other: "Expression") -> "Or":
        return Or(self, other)

    def __invert__(self) -> "Not":
        return Not(self)


class FieldRef(Expression):
    """A reference to a model field, by field name."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"FieldRef({self.name!r})"


class Value(Expression):
    """A literal value."""

    def __init__(self, value: Any) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"Value({self.value!r})"


class Parameter(Expression):
    """A named value supplied when the query runs."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"Parameter({self.name!r})"


#: The comparison operators, and their meaning in memory.
OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

#: What each operator becomes when its operands are swapped.
FLIPPED: dict[str, str] = {
    "==": "==",
    "!=": "!=",
    "<": ">",
    "<=": ">=",
    ">": "<",
    ">=": "<=",
}


class Comparison(Expression):
    """
    ``left <op> right``, where ``op`` is one of ``==``, ``!=``, ``<``,
    ``<=``, ``>`` and ``>=``.
    """

    def __init__(self, op: str, left: Expression, right: Expression) -> None:
        if op not in OPERATORS:
            msg = f"Unknown comparison operator '{op}'"
            raise QueryError(msg)
        self.op = op
        self.left = left
        self.right = right

    def __repr__(self) -> str:
        return f"Comparison({self.op!r}, {self.left!r}, {self.right!r})"


class And(Expression):
    def __init__(self, *children: Expression) -> None:
        self.children = list(children)

    def __repr__(self) -> str:
        return "And({})".format(", ".join(repr(c) for c in self.children))


class Or(Expression):
    def __init__(self, *children: Expression) -> None:
        self.children = list(children)

    def __repr__(self) -> str:
        return "Or({})".format(", ".join(repr(c) for c in self.children))


class Not(Expression):
    def __init__(self, child: Expression) -> None:
        self.child = child

    def __repr__(self) -> str:
        return f"Not({self.child!r})"


class StartsWith(Expression):
    """The string value of ``field`` starts with ``value``."""

    def __init__(self, field: Expression, value: Expression) -> None:
        self.field = field
        self.value = value

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.field!r}, {self.value!r})"


class EndsWith(StartsWith):
    """The string value of ``field`` ends with ``value``."""


class Contains(StartsWith):
    """
    ``field`` holds ``value``: an element of a multi-valued field, or a
    substring of a string.  This is only evaluated in memory.
    """


class Call(Expression):
    """
    An arbitrary Python predicate, ``func(*args)``.  This is only evaluated
    in memory.
    """

    def __init__(self, func: Callable[..., bool], *args: Expression) -> None:
        self.func = func
        self.args = list(args)

    def __repr__(self) -> str:
        return f"Call({self.func!r}, {self.args!r})"


# -----------------------
# Compilation
# -----------------------


class Untranslatable(Exception):
    """Raised inside the compiler when a node has no LDAP equivalent."""


def _field(model: "type[Model]", name: str) -> "Field":
    field = model._meta.fields_map.get(name)
    if field is None:
        msg = f"{model.__name__} has no field named '{name}'"
        raise QueryError(msg)
    return field


def _literal(node: Expression, parameters: dict[str, Any]) -> Any:
    if isinstance(node, Value):
        return node.value
    if isinstance(node, Parameter):
        try:
            return parameters[node.name]
        except KeyError as e:
            msg = f"No value was given for parameter '{node.name}'"
            raise QueryError(msg) from e
    msg = f"Expected a literal or a parameter, got {node!r}"
    raise QueryError(msg)


def _encode(field: "Field", value: Any) -> str:
    """
    Encode ``value`` with the codec of ``field`` and escape it for use in a
    filter.
    """
    if field.is_relation or field.embedded:
        raise Untranslatable
    codec = field
    if field.many:
        if getattr(field, "ordered", False):
            # stored values carry an index prefix
            raise Untranslatable
        codec = field.base_field  # type: ignore[attr-defined]
    try:
        encoded = codec.encode_value(value).decode("utf-8")
    except (UnicodeDecodeError, TypeError, ValueError) as e:
        raise Untranslatable from e
    return ldap.filter.escape_filter_chars(encoded)


def _split_operands(
    left: Expression, right: Expression, op: str
) -> tuple[FieldRef, Expression, str]:
    if isinstance(left, FieldRef) and isinstance(right, FieldRef):
        # LDAP filters cannot compare two attributes
        raise Untranslatable
    if isinstance(left, FieldRef):
        return left, right, op
    if isinstance(right, FieldRef):
        return right, left, FLIPPED[op]
    msg = f"A comparison needs a field on one side, got {left!r} and {right!r}"
    raise QueryError(msg)


def _compile_comparison(
    node: Comparison, parameters: dict[str, Any], model: "type[Model]"
) -> str:
    ref, other, op = _split_operands(node.left, node.right, node.op)
    field = _field(model, ref.name)
    if field.is_relation or field.embedded:
        raise Untranslatable
    attr = model._meta.attributes_map[ref.name]
    value = _literal(other, parameters)
    if value is None:
        if op == "==":
            return f"(!({attr}=*))"
        if op == "!=":
            return f"({attr}=*)"
        msg = f"Cannot order {ref.name} against None"
        raise QueryError(msg)
    v = _encode(field, value)
    if op == "==":
        return f"({attr}={v})"
    if op == "!=":
        return f"(!({attr}={v}))"
    if op == "<=":
        return f"({attr}<={v})"
    if op == ">=":
        return f"({attr}>={v})"
    # LDAP has no strict ordering match; the in-memory pass removes any
    # values the approximation lets through.
    if op == "<":
        return f"(&({attr}<={v})(!({attr}={v})))"
    return f"(&({attr}>={v})(!({attr}={v})))"


def _compile(node: Expression, parameters: dict[str, Any], model: "type[Model]") -> str:  # noqa: PLR0911
    if isinstance(node, Comparison):
        return _compile_comparison(node, parameters, model)
    if isinstance(node, (And, Or)):
        if not node.children:
            raise Untranslatable
        op = "&" if isinstance(node, And) else "|"
        parts = "".join(_compile(c, parameters, model) for c in node.children)
        return f"({op}{parts})"
    if isinstance(node, Not):
        return f"(!{_compile(node.child, parameters, model)})"
    if isinstance(node, (Contains, Call)):
        raise Untranslatable
    if isinstance(node, StartsWith):
        if not isinstance(node.field, FieldRef):
            msg = f"{node.__class__.__name__} needs a field, got {node.field!r}"
            raise QueryError(msg)
        field = _field(model, node.field.name)
        attr = model._meta.attributes_map[node.field.name]
        v = _encode(field, _literal(node.value, parameters))
        if isinstance(node, EndsWith):
            return f"({attr}=*{v})"
        return f"({attr}={v}*)"
    msg = f"{node!r} is not a predicate"
    raise QueryError(msg)


def compile_filter(
    expression: Expression | None,
    parameters: dict[str, Any] | None,
    model: "type[Model]",
) -> str | None:
    """
    Translate ``expression`` into an LDAP filter string.

    Args:
        expression: the expression tree
        parameters: values for the :py:class:`Parameter` nodes
        model: the model whose fields the expression refers to

    Raises:
        QueryError: the tree is malformed: an unknown field, a comparison
            between two literals, a parameter with no value

    Returns:
        The filter, or ``None`` if the expression uses anything that has no
        LDAP equivalent.

    """
    if expression is None:
        return None
    try:
        return _compile(expression, parameters or {}, model)
    except Untranslatable:
        return None


# -----------------------
# Evaluation
# -----------------------


def _fold(value: Any) -> Any:
    # Most directory string attributes match case-insensitively
    if isinstance(value, str):
        return value.casefold()
    return value


def _operand(node: Expression, obj: "Model", parameters: dict[str, Any]) -> Any:
    if isinstance(node, FieldRef):
        if node.name not in obj._meta.fields_map:
            msg = f"{obj._meta.object_name} has no field named '{node.name}'"
            raise QueryError(msg)
        return getattr(obj, node.name)
    if isinstance(node, (Value, Parameter)):
        return _literal(node, parameters)
    return evaluate(node, obj, parameters)


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, (list, set, tuple)) and not isinstance(right, (list, set, tuple)):
        if right is None:
            return (op == "==") == (not left)
        return any(_compare(op, item, right) for item in left)
    if isinstance(right, (list, set, tuple)) and not isinstance(left, (list, set, tuple)):
        return _compare(FLIPPED[op], right, left)
    if left is None or right is None:
        if op == "==":
            return left is right
        if op == "!=":
            return left is not right
        return False
    try:
        return OPERATORS[op](_fold(left), _fold(right))
    except TypeError:
        return False


def evaluate(  # noqa: PLR0911
    expression: Expression, obj: "Model", parameters: dict[str, Any] | None = None
) -> bool:
    """
    Evaluate ``expression`` against ``obj`` in memory.

    String comparisons ignore case, as the directory's usual matching rules
    do; a multi-valued field matches if any of its values does.
    """
    params = parameters or {}
    if isinstance(expression, Comparison):
        left = _operand(expression.left, obj, params)
        right = _operand(expression.right, obj, params)
        return _compare(expression.op, left, right)
    if isinstance(expression, And):
        return all(evaluate(c, obj, params) for c in expression.children)
    if isinstance(expression, Or):
        return any(evaluate(c, obj, params) for c in expression.children)
    if isinstance(expression, Not):
        return not evaluate(expression.child, obj, params)
    if isinstance(expression, Call):
        return bool(expression.func(*[_operand(a, obj, params) for a in expression.args]))
    if isinstance(expression, StartsWith):
        haystack = _operand(expression.field, obj, params)
        needle = _fold(_operand(expression.value, obj, params))
        if haystack is None:
            return False
        values = haystack if isinstance(haystack, (list, set, tuple)) else [haystack]
        if isinstance(expression, Contains):
            if isinstance(haystack, str):
                return str(needle) in _fold(haystack)
            return any(_fold(v) == needle for v in values)
        if isinstance(expression, EndsWith):
            return any(str(_fold(v)).endswith(str(needle)) for v in values)
        return any(str(_fold(v)).startswith(str(needle)) for v in values)
    msg = f"{expression!r} is not a predicate"
    raise QueryError(msg)


# -----------------------
# Lookups
# -----------------------

#: The lookup suffixes understood by :py:meth:`Query.filter`.
LOOKUPS = (
    "exact",
    "ne",
    "lt",
    "lte",
    "gt",
    "gte",
    "startswith",
    "endswith",
    "isnull",
    "contains",
)

_LOOKUP_OPERATORS = {"exact": "==", "ne": "!=", "lt": "<", "lte": "<=", "gt": ">", "gte": ">="}


def lookup_expression(model: "type[Model]", key: str, value: Any) -> Expression:
    """
    Build an expression for a single ``field__suffix=value`` lookup.

    Raises:
        Model.InvalidField: the field does not exist on ``model``
        Query.UnknownSuffix: the suffix is not one of :py:data:`LOOKUPS`

    """
    if "__" in key:
        name, suffix = key.split("__", 1)
    else:
        name, suffix = key, "exact"
    if name == "pk" and model._meta.pk is not None:
        name = cast("str", model._meta.pk.name)
    if name not in model._meta.fields_map:
        msg = f'"{name}" is not a valid field on model {model.__name__}'
        raise model.InvalidField(msg)
    ref = FieldRef(name)
    if suffix in _LOOKUP_OPERATORS:
        return Comparison(_LOOKUP_OPERATORS[suffix], ref, Value(value))
    if suffix == "startswith":
        return StartsWith(ref, Value(value))
    if suffix == "endswith":
        return EndsWith(ref, Value(value))
    if suffix == "contains":
        return Contains(ref, Value(value))
    if suffix == "isnull":
        return Comparison("==" if value else "!=", ref, Value(None))
    msg = f'Unknown filter suffix: "{suffix}"'
    raise Query.UnknownSuffix(msg)


def _combine(*expressions: Expression | None) -> Expression | None:
    parts = [e for e in expressions if e is not None]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return And(*parts)


# -----------------------
# Query
# -----------------------


class Query:
    """
    QuerySet-like access to the entries of a model.

    Queries are lazy and immutable: :py:meth:`filter`, :py:meth:`exclude` and
    :py:meth:`order_by` return new queries, and nothing is read from the
    directory until the query is iterated, counted or asked for a single
    result.

    Args:
        manager: the manager of the model we query

    Keyword Args:
        expression: the expression entries must satisfy
        parameters: values for the expression's :py:class:`Parameter` nodes
        ordering: field names to sort by, ``-`` prefixed for descending

    """

    class UnknownSuffix(Exception):
        """Raised when an unknown filter suffix is used in a query."""

    def __init__(
        self,
        manager: "LdapManager",
        expression: Expression | None = None,
        parameters: dict[str, Any] | None = None,
        ordering: list[str] | None = None,
    ) -> None:
        self.manager = manager
        self.model = cast("type[Model]", manager.model)
        self.expression = expression
        self.parameters = dict(parameters or {})
        self._order_by = list(self.model._meta.ordering if ordering is None else ordering)
        self._result_cache: list[Model] | None = None

    def _clone(self, **kwargs) -> "Query":
        options = {
            "expression": self.expression,
            "parameters": self.parameters,
            "ordering": self._order_by,
        }
        options.update(kwargs)
        return Query(self.manager, **options)

    def _lookups(self, args: tuple[Expression, ...], kwargs: dict[str, Any]) -> Expression | None:
        for arg in args:
            if not isinstance(arg, Expression):
                msg = "Query.filter() positional arguments must all be Expression objects."
                raise TypeError(msg)
        lookups = [lookup_expression(self.model, k, v) for k, v in kwargs.items()]
        return _combine(*args, *lookups)

    def filter(self, *args: Expression, **kwargs) -> "Query":
        """
        Narrow the query to entries matching every expression and lookup.
        """
        return self._clone(expression=_combine(self.expression, self._lookups(args, kwargs)))

    def exclude(self, *args: Expression, **kwargs) -> "Query":
        """
        Narrow the query to entries that do not match all of the expressions
        and lookups.
        """
        expression = self._lookups(args, kwargs)
        if expression is None:
            return self._clone()
        return self._clone(expression=_combine(self.expression, Not(expression)))

    def order_by(self, *args: str) -> "Query":
        for name in args:
            if name.lstrip("-") not in self.model._meta.fields_map:
                msg = f'"{name}" is not a valid field on model {self.model.__name__}'
                raise self.model.InvalidField(msg)
        return self._clone(ordering=list(args))

    def all(self) -> "Query":
        return self._clone()

    @property
    def native_filter(self) -> str | None:
        """
        The LDAP translation of our expression, or ``None``.
        """
        return compile_filter(self.expression, self.parameters, self.model)

    def __str__(self) -> str:
        return self.native_filter or ""

    def _search(self) -> list["Model"]:
        native = self.native_filter
        if self.expression is not None and native is None:
            logger.warning(
                "ldapmapper.query.native-query-failed filter=%s expression=%r",
                None,
                self.expression,
            )
            return self.manager.get_entries()
        try:
            return self.manager.get_entries(extra_filter=native)
        except DatastoreError as e:
            logger.warning(
                "ldapmapper.query.native-query-failed filter=%s error=%s", native, e
            )
            return self.manager.get_entries()

    def _execute_query(self) -> list["Model"]:
        if self._result_cache is None:
            objects = self._search()
            if self.expression is not None:
                objects = [
                    obj
                    for obj in objects
                    if evaluate(self.expression, obj, self.parameters)
                ]
            self._result_cache = self._sort_objects_client_side(objects)
        return self._result_cache

    def _sort_objects_client_side(self, objects: list["Model"]) -> list["Model"]:
        """
        Sort ``objects`` by our ordering.  Objects with no value for a key
        sort before those that have one.
        """
        if not self._order_by:
            return objects

        def get_sort_key(obj, key):
            value = getattr(obj, key)
            if value is None:
                return (0, None)
            return (1, _fold(value))

        keys = list(self._order_by)
        keys.reverse()
        for k in keys:
            key = k.lstrip("-")
            objects = sorted(
                objects,
                key=lambda obj, key=key: get_sort_key(obj, key),
                reverse=k.startswith("-"),
            )
        return objects

    def __iter__(self) -> Iterator["Model"]:
        return iter(self._execute_query())

    def __len__(self) -> int:
        return len(self._execute_query())

    def __getitem__(self, key: int | slice) -> "Model | list[Model]":
        return self._execute_query()[key]

    def count(self) -> int:
        return len(self)

    def exists(self) -> bool:
        return len(self) > 0

    def as_list(self) -> list["Model"]:
        return list(self._execute_query())

    def first(self) -> Optional["Model"]:
        """
        Return the first result, or ``None`` if there are none.
        """
        objects = self._execute_query()
        return objects[0] if objects else None

    def get(self, *args: Expression, **kwargs) -> "Model":
        """
        Return the single result of the query.

        Raises:
            DoesNotExist: no entry matches
            MultipleObjectsReturned: more than one entry matches

        """
        if args or kwargs:
            return self.filter(*args, **kwargs).get()
        objects = self._execute_query()
        if len(objects) == 0:
            msg = f"A {self.model.__name__} object matching query does not exist."
            raise self.model.DoesNotExist(msg)
        if len(objects) > 1:
            msg = f"More than one {self.model.__name__} object matched query."
            raise self.model.MultipleObjectsReturned(msg)
        return objects[0]

    def get_or_none(self, *args: Expression, **kwargs) -> Optional["Model"]:
        try:
            return self.get(*args, **kwargs)
        except (self.model.DoesNotExist, self.model.MultipleObjectsReturned):
            return None
