"""
Expression language for context rule conditions.

Rule authors write JavaScript-flavoured boolean expressions such as
``$leadScore >= 80 && event.type == "variable_set"``. They are parsed into a
small tree and interpreted here; nothing is ever handed to ``eval``. The
language has literals, names, ``$variable`` references, member access, and
boolean / comparison / arithmetic operators. There are no calls, no
assignments and no attribute access on Python objects.
"""

import json
import math
import re
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from errors import ExpressionError

MAX_EXPRESSION_LENGTH = 2000
MAX_DEPTH = 50
MAX_TREE_DEPTH = 100

KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}
WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!", "in": "in"}

_VARIABLE_RE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<var>\$[A-Za-z_][A-Za-z0-9_]*)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!+\-*/%])
  | (?P<punct>[()\[\]{},:.])
""", re.VERBOSE)


class Token(NamedTuple):
    kind: str
    value: Any
    pos: int


def tokenize(source: str) -> List[Token]:
    """Split an expression into tokens."""
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")

    tokens: List[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            tokens.append(Token("number", float(text) if any(c in text for c in ".eE") else int(text), pos))
        elif kind == "string":
            tokens.append(Token("string", _decode_string(text), pos))
        elif kind == "var":
            tokens.append(Token("var", text[1:], pos))
        elif kind == "name":
            if text in KEYWORDS:
                tokens.append(Token("literal", KEYWORDS[text], pos))
            elif text in WORD_OPERATORS:
                tokens.append(Token("op", WORD_OPERATORS[text], pos))
            else:
                tokens.append(Token("name", text, pos))
        elif kind in ("op", "punct"):
            tokens.append(Token(kind, text, pos))
        pos = match.end()

    tokens.append(Token("end", None, len(source)))
    return tokens


def _decode_string(text: str) -> str:
    if text[0] == '"':
        try:
            return json.loads(text)
        except ValueError as e:
            raise ExpressionError(f"Invalid string literal {text}: {e}") from e
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


class Parser:
    """Recursive-descent parser producing tuple-based syntax trees."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0
        self.depth = 0

    def parse(self) -> tuple:
        node = self._expression()
        token = self._peek()
        if token.kind != "end":
            raise ExpressionError(f"Unexpected token {token.value!r} at position {token.pos}")
        if tree_depth(node) > MAX_TREE_DEPTH:
            raise ExpressionError(f"Expression deeper than {MAX_TREE_DEPTH} operations")
        return node

    # precedence climbing, lowest first

    def _expression(self) -> tuple:
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ExpressionError("Expression nested too deeply")
        try:
            return self._or()
        finally:
            self.depth -= 1

    def _or(self) -> tuple:
        node = self._and()
        while self._accept("op", "||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> tuple:
        node = self._equality()
        while self._accept("op", "&&"):
            node = ("and", node, self._equality())
        return node

    def _equality(self) -> tuple:
        node = self._comparison()
        while True:
            op = self._accept_any("op", ("===", "!==", "==", "!="))
            if op is None:
                return node
            node = ("binary", op, node, self._comparison())

    def _comparison(self) -> tuple:
        node = self._additive()
        while True:
            op = self._accept_any("op", ("<", "<=", ">", ">=", "in"))
            if op is None:
                return node
            node = ("binary", op, node, self._additive())

    def _additive(self) -> tuple:
        node = self._multiplicative()
        while True:
            op = self._accept_any("op", ("+", "-"))
            if op is None:
                return node
            node = ("binary", op, node, self._multiplicative())

    def _multiplicative(self) -> tuple:
        node = self._unary()
        while True:
            op = self._accept_any("op", ("*", "/", "%"))
            if op is None:
                return node
            node = ("binary", op, node, self._unary())

    def _unary(self) -> tuple:
        op = self._accept_any("op", ("!", "-", "+"))
        if op is not None:
            self.depth += 1
            if self.depth > MAX_DEPTH:
                raise ExpressionError("Expression nested too deeply")
            try:
                return ("unary", op, self._unary())
            finally:
                self.depth -= 1
        return self._postfix()

    def _postfix(self) -> tuple:
        node = self._primary()
        while True:
            if self._accept("punct", "."):
                token = self._next()
                if token.kind != "name":
                    raise ExpressionError(f"Expected member name at position {token.pos}")
                node = ("member", node, ("literal", token.value))
            elif self._accept("punct", "["):
                key = self._expression()
                self._expect("punct", "]")
                node = ("member", node, key)
            else:
                return node

    def _primary(self) -> tuple:
        token = self._next()
        if token.kind in ("number", "string", "literal"):
            return ("literal", token.value)
        if token.kind == "var":
            return ("var", token.value)
        if token.kind == "name":
            if self._peek().kind == "punct" and self._peek().value == "(":
                raise ExpressionError(f"Function calls are not allowed ({token.value})")
            return ("name", token.value)
        if token.kind == "punct" and token.value == "(":
            node = self._expression()
            self._expect("punct", ")")
            return node
        if token.kind == "punct" and token.value == "[":
            items = []
            if not self._accept("punct", "]"):
                items.append(self._expression())
                while self._accept("punct", ","):
                    items.append(self._expression())
                self._expect("punct", "]")
            return ("array", items)
        if token.kind == "punct" and token.value == "{":
            pairs = []
            if not self._accept("punct", "}"):
                pairs.append(self._pair())
                while self._accept("punct", ","):
                    pairs.append(self._pair())
                self._expect("punct", "}")
            return ("object", pairs)
        if token.kind == "end":
            raise ExpressionError("Unexpected end of expression")
        raise ExpressionError(f"Unexpected token {token.value!r} at position {token.pos}")

    def _pair(self) -> Tuple[str, tuple]:
        token = self._next()
        if token.kind not in ("string", "name"):
            raise ExpressionError(f"Expected object key at position {token.pos}")
        self._expect("punct", ":")
        return token.value, self._expression()

    # token helpers

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _next(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "end":
            self.index += 1
        return token

    def _accept(self, kind: str, value: Any) -> bool:
        token = self._peek()
        if token.kind == kind and token.value == value:
            self.index += 1
            return True
        return False

    def _accept_any(self, kind: str, values: Tuple[str, ...]) -> Optional[str]:
        token = self._peek()
        if token.kind == kind and token.value in values:
            self.index += 1
            return token.value
        return None

    def _expect(self, kind: str, value: Any) -> None:
        if not self._accept(kind, value):
            token = self._peek()
            raise ExpressionError(f"Expected {value!r} at position {token.pos}")


def _children(node: tuple) -> List[tuple]:
    kind = node[0]
    if kind == "array":
        return list(node[1])
    if kind == "object":
        return [value for _key, value in node[1]]
    if kind in ("member", "and", "or"):
        return [node[1], node[2]]
    if kind == "unary":
        return [node[2]]
    if kind == "binary":
        return [node[2], node[3]]
    return []


def tree_depth(node: tuple) -> int:
    """Depth of a syntax tree, measured without recursion."""
    deepest = 0
    stack = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        stack.extend((child, depth + 1) for child in _children(current))
    return deepest


def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: empty arrays and objects are true."""
    if isinstance(value, (list, dict)):
        return True
    if isinstance(value, float) and value != value:
        return False
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Expression:
    """A parsed condition that can be evaluated against many scopes."""

    def __init__(self, source: str):
        self.source = source
        self.tree = Parser(source).parse()

    def evaluate(self, scope: Mapping[str, Any], variables: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Evaluate the expression.

        Args:
            scope: Values bound to bare names (e.g. ``event``, ``sessionId``)
            variables: Values bound to ``$name`` references; unknown ones are null

        Raises:
            ExpressionError: On type errors and on numbers too large to handle
        """
        try:
            return self._eval(self.tree, scope, variables or {})
        except (OverflowError, ValueError) as e:
            # int -> float conversion and int -> str digit limits
            raise ExpressionError(f"Numeric overflow: {e}") from e

    def _eval(self, node: tuple, scope: Mapping[str, Any], variables: Mapping[str, Any]) -> Any:
        kind = node[0]

        if kind == "literal":
            return node[1]
        if kind == "var":
            return variables.get(node[1])
        if kind == "name":
            if node[1] not in scope:
                raise ExpressionError(f"Unknown name: {node[1]}")
            return scope[node[1]]
        if kind == "array":
            return [self._eval(item, scope, variables) for item in node[1]]
        if kind == "object":
            return {key: self._eval(value, scope, variables) for key, value in node[1]}
        if kind == "member":
            return self._member(self._eval(node[1], scope, variables), self._eval(node[2], scope, variables))
        if kind == "and":
            left = self._eval(node[1], scope, variables)
            return self._eval(node[2], scope, variables) if is_truthy(left) else left
        if kind == "or":
            left = self._eval(node[1], scope, variables)
            return left if is_truthy(left) else self._eval(node[2], scope, variables)
        if kind == "unary":
            return self._unary(node[1], self._eval(node[2], scope, variables))
        if kind == "binary":
            return self._binary(
                node[1],
                self._eval(node[2], scope, variables),
                self._eval(node[3], scope, variables),
            )
        raise ExpressionError(f"Unknown node: {kind}")

    @staticmethod
    def _member(container: Any, key: Any) -> Any:
        if container is None:
            return None
        if isinstance(container, dict):
            return container.get(key if isinstance(key, str) else str(key))
        if isinstance(container, (list, str)):
            if key == "length":
                return len(container)
            if _is_number(key) and math.isfinite(key) and int(key) == key and 0 <= int(key) < len(container):
                return container[int(key)]
            return None
        raise ExpressionError(f"Cannot read member {key!r} of {type(container).__name__}")

    @staticmethod
    def _unary(op: str, value: Any) -> Any:
        if op == "!":
            return not is_truthy(value)
        if not _is_number(value):
            raise ExpressionError(f"Unary {op} requires a number")
        return -value if op == "-" else value

    @staticmethod
    def _binary(op: str, left: Any, right: Any) -> Any:
        if op in ("==", "!="):
            equal = left == right
            return equal if op == "==" else not equal
        if op in ("===", "!=="):
            same_kind = (_is_number(left) and _is_number(right)) or type(left) is type(right)
            equal = same_kind and left == right
            return equal if op == "===" else not equal

        if op == "in":
            if isinstance(right, (list, str)):
                if isinstance(right, str) and not isinstance(left, str):
                    raise ExpressionError("'in' on a string requires a string operand")
                return left in right
            if isinstance(right, dict):
                return str(left) in right
            if right is None:
                return False
            raise ExpressionError(f"'in' requires an array, object or string, got {type(right).__name__}")

        if op in ("<", "<=", ">", ">="):
            if left is None or right is None:
                return False
            if not ((_is_number(left) and _is_number(right)) or
                    (isinstance(left, str) and isinstance(right, str))):
                raise ExpressionError(
                    f"Cannot compare {type(left).__name__} with {type(right).__name__}"
                )
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            return left >= right

        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return f"{_to_text(left)}{_to_text(right)}"

        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(f"Operator {op} requires numbers")
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if right == 0:
            raise ExpressionError("Division by zero")
        if op == "/":
            return left / right
        return left % right


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def substitute_variables(condition: str, values: Dict[str, Any]) -> str:
    """
    Replace ``$name`` tokens with the JSON encoding of known variable values.

    The condition is scanned once, so text inserted for one variable is never
    rewritten by another, and each match covers the whole name (``$lead``
    never rewrites part of ``$leadScore``). Unknown ``$name`` tokens are left
    in place and evaluate to null.
    """
    def replace(match: "re.Match") -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        return json.dumps(values[name], default=str)

    return _VARIABLE_RE.sub(replace, condition)


def evaluate(source: str, scope: Mapping[str, Any], variables: Optional[Mapping[str, Any]] = None) -> Any:
    """Parse and evaluate in one step."""
    return Expression(source).evaluate(scope, variables)
