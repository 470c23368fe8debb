"""
Template Expression Language
============================
A small, explicit expression/statement language for template commands.

Template snippets are never handed to Python's eval(). They are parsed into
a tiny AST and interpreted against an explicit Environment, so a snippet
can only see the render data, loop variables and the helper functions.

Supported syntax (JavaScript flavoured, since that is what template authors write):
- literals: 12, 1.5, 'text', "text", true, false, null, undefined, [a, b]
- names: field, $item, this
- access: a.b, a["b c"], a[0], f(x, y), text.toUpperCase()
- operators: ! - + * / % < <= > >= == != === !== && || ?? and a ? b : c
- statements: name = expr, a.b = expr, delete name, var/let/const name = expr
  separated by ';'. A program evaluates to the value of its last statement.
"""

from __future__ import annotations
import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Context, Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import TemplateEvaluationError, TemplateSyntaxError
from .text_utils import to_number, to_safe_string

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>(?:[^\W\d]|\$)(?:\w|\$)*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||\?\?|[-+*/%<>!?:.,()\[\];=])
    """,
    re.VERBOSE,
)

ESCAPE_PATTERN = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}

KEYWORD_VALUES = {"true": True, "false": False, "null": None, "undefined": None}
DECLARATIONS = ("var", "let", "const")


class Environment:
    """
    Name resolution for expression evaluation.

    Subclasses decide where names live; the evaluator only ever goes through
    lookup/assign/delete and the `this` object.
    """

    def lookup(self, name: str) -> Any:
        raise NotImplementedError

    def assign(self, name: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, name: str) -> bool:
        raise NotImplementedError

    @property
    def this(self) -> Any:
        raise NotImplementedError


class DictEnvironment(Environment):
    """Environment backed by a plain dict (names are keys, `this` is the dict)."""

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values = values if values is not None else {}

    def lookup(self, name: str) -> Any:
        if name not in self.values:
            raise TemplateEvaluationError(f"{name} is not defined", {"name": name})
        return self.values[name]

    def assign(self, name: str, value: Any) -> None:
        self.values[name] = value

    def delete(self, name: str) -> bool:
        return self.values.pop(name, None) is not None

    @property
    def this(self) -> Any:
        return self.values


# =============================================================================
# VALUE SEMANTICS
# =============================================================================

def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: empty containers are truthy, NaN is falsy."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def _arith(value: Any) -> float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return math.nan
    if isinstance(value, str) and not value.strip():
        return 0
    number = to_number(value)
    return math.nan if number is None else number


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left)
    return left / right


def _modulo(left: float, right: float) -> float:
    if right == 0 or math.isinf(left):
        return math.nan
    return math.fmod(left, right)


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        return to_safe_string(left) + to_safe_string(right)
    return _arith(left) + _arith(right)


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, (int, float)) or isinstance(right, str) and isinstance(left, (int, float)):
        return _arith(left) == _arith(right)
    return left == right


def strict_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return left == right
    return type(left) is type(right) and left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if not (isinstance(left, str) and isinstance(right, str)):
        left, right = _arith(left), _arith(right)
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


BINARY_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": lambda a, b: _arith(a) - _arith(b),
    "*": lambda a, b: _arith(a) * _arith(b),
    "/": lambda a, b: _divide(_arith(a), _arith(b)),
    "%": lambda a, b: _modulo(_arith(a), _arith(b)),
    "==": loose_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "===": strict_equals,
    "!==": lambda a, b: not strict_equals(a, b),
    "<": lambda a, b: _compare("<", a, b),
    "<=": lambda a, b: _compare("<=", a, b),
    ">": lambda a, b: _compare(">", a, b),
    ">=": lambda a, b: _compare(">=", a, b),
}


# Wide enough for 1e21 with 100 fraction digits.
FIXED_CONTEXT = Context(prec=128)


def _to_fixed(value: Any, digits: Any = 0) -> str:
    """Number.prototype.toFixed: ties round away from zero on the exact binary value."""
    number = _arith(value)
    if not math.isfinite(number) or abs(number) >= 1e21:
        return to_safe_string(number)
    places = int(_arith(digits) or 0)
    fixed = Decimal(number or 0).quantize(
        Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP, context=FIXED_CONTEXT
    )
    return format(fixed, "f")


def _join(items: Any, separator: Any = ",") -> str:
    return to_safe_string(separator).join(to_safe_string(item) for item in items)


# Methods template authors commonly call on plain values.
STRING_METHODS: Dict[str, Callable[..., Any]] = {
    "toUpperCase": lambda s: s.upper(),
    "toLowerCase": lambda s: s.lower(),
    "trim": lambda s: s.strip(),
    "toString": lambda s: s,
    "includes": lambda s, part="": to_safe_string(part) in s,
    "startsWith": lambda s, part="": s.startswith(to_safe_string(part)),
    "endsWith": lambda s, part="": s.endswith(to_safe_string(part)),
    "replace": lambda s, old="", new="": s.replace(to_safe_string(old), to_safe_string(new), 1),
    "padStart": lambda s, width=0, fill=" ": s.rjust(int(_arith(width)), (to_safe_string(fill) or " ")[0]),
    "split": lambda s, sep=None: s.split(to_safe_string(sep)) if sep else list(s),
}
LIST_METHODS: Dict[str, Callable[..., Any]] = {
    "join": _join,
    "includes": lambda items, value=None: any(strict_equals(item, value) for item in items),
    "toString": lambda items: _join(items),
}
NUMBER_METHODS: Dict[str, Callable[..., Any]] = {
    "toFixed": _to_fixed,
    "toString": to_safe_string,
}


def _builtin_method(obj: Any, name: str) -> Optional[Callable[..., Any]]:
    if isinstance(obj, str):
        table = STRING_METHODS
    elif isinstance(obj, (list, tuple)):
        table = LIST_METHODS
    elif isinstance(obj, (int, float)) and not isinstance(obj, bool):
        table = NUMBER_METHODS
    else:
        return None
    method = table.get(name)
    if method is None:
        return None
    return lambda *args: method(obj, *args)


def get_member(obj: Any, key: Any) -> Any:
    """Read obj[key] with JavaScript-like leniency (missing keys are None)."""
    if obj is None:
        raise TemplateEvaluationError(
            f"Cannot read properties of null (reading '{to_safe_string(key)}')",
            {"key": to_safe_string(key)},
        )
    if isinstance(obj, dict):
        if isinstance(key, str) and key in obj:
            return obj[key]
        return obj.get(to_safe_string(key))
    if isinstance(obj, (list, tuple, str)):
        if key == "length":
            return len(obj)
        index = to_number(key)
        if index is not None and index.is_integer() and 0 <= index < len(obj):
            return obj[int(index)]
        return None
    if isinstance(key, str) and key and not key.startswith("_"):
        return getattr(obj, key, None)
    return None


def set_member(obj: Any, key: Any, value: Any) -> None:
    if isinstance(obj, dict):
        obj[key if isinstance(key, str) else to_safe_string(key)] = value
        return
    if isinstance(obj, list):
        index = to_number(key)
        if index is not None and index.is_integer() and 0 <= index < len(obj):
            obj[int(index)] = value
            return
    raise TemplateEvaluationError(
        f"Cannot set property '{to_safe_string(key)}' on {type(obj).__name__}",
        {"key": to_safe_string(key)},
    )


# =============================================================================
# AST
# =============================================================================

class Node:
    def evaluate(self, env: Environment) -> Any:
        raise NotImplementedError


@dataclass
class Literal(Node):
    value: Any

    def evaluate(self, env: Environment) -> Any:
        return self.value


@dataclass
class Name(Node):
    name: str

    def evaluate(self, env: Environment) -> Any:
        return env.lookup(self.name)


@dataclass
class This(Node):
    def evaluate(self, env: Environment) -> Any:
        return env.this


@dataclass
class ArrayLiteral(Node):
    items: List[Node]

    def evaluate(self, env: Environment) -> Any:
        return [item.evaluate(env) for item in self.items]


@dataclass
class Member(Node):
    obj: Node
    key: Node

    def evaluate(self, env: Environment) -> Any:
        return get_member(self.obj.evaluate(env), self.key.evaluate(env))


@dataclass
class Call(Node):
    callee: Node
    args: List[Node]
    source: str = ""

    def _resolve(self, env: Environment) -> Any:
        if isinstance(self.callee, Member):
            obj = self.callee.obj.evaluate(env)
            key = self.callee.key.evaluate(env)
            value = get_member(obj, key)
            if value is None and isinstance(key, str):
                return _builtin_method(obj, key)
            return value
        return self.callee.evaluate(env)

    def evaluate(self, env: Environment) -> Any:
        func = self._resolve(env)
        if not callable(func):
            raise TemplateEvaluationError(f"{self.source or 'expression'} is not a function")
        args = [arg.evaluate(env) for arg in self.args]
        return func(*args)


@dataclass
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self, env: Environment) -> Any:
        value = self.operand.evaluate(env)
        if self.op == "!":
            return not is_truthy(value)
        if self.op == "-":
            return -_arith(value)
        return _arith(value)


@dataclass
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Environment) -> Any:
        return BINARY_OPERATORS[self.op](self.left.evaluate(env), self.right.evaluate(env))


@dataclass
class Logical(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, env: Environment) -> Any:
        left = self.left.evaluate(env)
        if self.op == "&&":
            return self.right.evaluate(env) if is_truthy(left) else left
        if self.op == "||":
            return left if is_truthy(left) else self.right.evaluate(env)
        return self.right.evaluate(env) if left is None else left


@dataclass
class Conditional(Node):
    test: Node
    consequent: Node
    alternate: Node

    def evaluate(self, env: Environment) -> Any:
        if is_truthy(self.test.evaluate(env)):
            return self.consequent.evaluate(env)
        return self.alternate.evaluate(env)


@dataclass
class Assign(Node):
    target: Node
    value: Node

    def evaluate(self, env: Environment) -> Any:
        value = self.value.evaluate(env)
        if isinstance(self.target, Name):
            env.assign(self.target.name, value)
        else:
            set_member(self.target.obj.evaluate(env), self.target.key.evaluate(env), value)
        return value


@dataclass
class Delete(Node):
    target: Node

    def evaluate(self, env: Environment) -> Any:
        if isinstance(self.target, Name):
            return env.delete(self.target.name)
        obj = self.target.obj.evaluate(env)
        key = self.target.key.evaluate(env)
        if isinstance(obj, dict):
            return obj.pop(key, None) is not None
        return False


@dataclass
class Program(Node):
    statements: List[Node] = field(default_factory=list)

    def evaluate(self, env: Environment) -> Any:
        result = None
        for statement in self.statements:
            result = statement.evaluate(env)
        return result


# =============================================================================
# TOKENIZER & PARSER
# =============================================================================

@dataclass
class Token:
    kind: str
    value: str
    position: int


def _unescape(literal: str) -> str:
    def replace(match: re.Match) -> str:
        escape = match.group(1)
        if escape.startswith("u") and len(escape) == 5:
            return chr(int(escape[1:], 16))
        return SIMPLE_ESCAPES.get(escape, escape)

    return ESCAPE_PATTERN.sub(replace, literal[1:-1])


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    while position < len(source):
        match = TOKEN_PATTERN.match(source, position)
        if not match:
            raise TemplateSyntaxError(
                f"Unexpected character {source[position]!r} at {position} in: {source}",
                {"source": source, "position": position},
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), position))
        position = match.end()
    tokens.append(Token("eof", "", len(source)))
    return tokens


class Parser:
    """Recursive descent parser producing a Program."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    # -- token helpers --------------------------------------------------------

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _check(self, value: str) -> bool:
        token = self.current
        return token.kind in ("op", "name") and token.value == value

    def _accept(self, *values: str) -> Optional[Token]:
        if self.current.kind in ("op", "name") and self.current.value in values:
            return self._advance()
        return None

    def _expect(self, value: str) -> Token:
        token = self._accept(value)
        if token is None:
            self._error(f"Expected '{value}'")
        return token

    def _error(self, message: str):
        token = self.current
        found = token.value or "end of input"
        raise TemplateSyntaxError(
            f"{message} but found '{found}' at {token.position} in: {self.source}",
            {"source": self.source, "position": token.position},
        )

    def _text(self, start: int) -> str:
        end = self.current.position
        return self.source[self.tokens[start].position:end].strip()

    # -- grammar --------------------------------------------------------------

    def parse_program(self) -> Program:
        statements: List[Node] = []
        while self.current.kind != "eof":
            if self._accept(";"):
                continue
            statements.append(self.parse_statement())
            if self.current.kind != "eof":
                self._expect(";")
        return Program(statements)

    def parse_statement(self) -> Node:
        if self._accept("delete"):
            target = self.parse_unary()
            if not isinstance(target, (Name, Member)):
                self._error("Invalid delete target")
            return Delete(target)
        if self._accept(*DECLARATIONS):
            if self.current.kind != "name":
                self._error("Expected variable name")
            name = Name(self._advance().value)
            if self._accept("="):
                return Assign(name, self.parse_assignment())
            return Assign(name, Literal(None))
        return self.parse_assignment()

    def parse_assignment(self) -> Node:
        target = self.parse_conditional()
        if self._check("="):
            if not isinstance(target, (Name, Member)):
                self._error("Invalid assignment target")
            self._advance()
            return Assign(target, self.parse_assignment())
        return target

    def parse_conditional(self) -> Node:
        test = self.parse_or()
        if self._accept("?"):
            consequent = self.parse_assignment()
            self._expect(":")
            alternate = self.parse_assignment()
            return Conditional(test, consequent, alternate)
        return test

    def parse_or(self) -> Node:
        node = self.parse_and()
        while True:
            token = self._accept("||", "??")
            if token is None:
                return node
            node = Logical(token.value, node, self.parse_and())

    def parse_and(self) -> Node:
        node = self.parse_equality()
        while self._accept("&&"):
            node = Logical("&&", node, self.parse_equality())
        return node

    def _binary_level(self, operators: Tuple[str, ...], operand: Callable[[], Node]) -> Node:
        node = operand()
        while True:
            token = self._accept(*operators)
            if token is None:
                return node
            node = Binary(token.value, node, operand())

    def parse_equality(self) -> Node:
        return self._binary_level(("===", "!==", "==", "!="), self.parse_relational)

    def parse_relational(self) -> Node:
        return self._binary_level(("<=", ">=", "<", ">"), self.parse_additive)

    def parse_additive(self) -> Node:
        return self._binary_level(("+", "-"), self.parse_multiplicative)

    def parse_multiplicative(self) -> Node:
        return self._binary_level(("*", "/", "%"), self.parse_unary)

    def parse_unary(self) -> Node:
        token = self._accept("!", "-", "+")
        if token is not None:
            return Unary(token.value, self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        start = self.index
        node = self.parse_primary()
        while True:
            if self._accept("."):
                if self.current.kind != "name":
                    self._error("Expected property name")
                node = Member(node, Literal(self._advance().value))
            elif self._accept("["):
                key = self.parse_assignment()
                self._expect("]")
                node = Member(node, key)
            elif self._check("("):
                source = self._text(start)
                self._advance()
                node = Call(node, self._parse_arguments(")"), source)
            else:
                return node

    def _parse_arguments(self, closing: str) -> List[Node]:
        args: List[Node] = []
        if self._accept(closing):
            return args
        while True:
            args.append(self.parse_assignment())
            if self._accept(closing):
                return args
            self._expect(",")

    def parse_primary(self) -> Node:
        token = self.current
        if token.kind == "number":
            self._advance()
            if token.value.isdigit():
                return Literal(int(token.value))
            return Literal(float(token.value))
        if token.kind == "string":
            self._advance()
            return Literal(_unescape(token.value))
        if token.kind == "name":
            self._advance()
            if token.value in KEYWORD_VALUES:
                return Literal(KEYWORD_VALUES[token.value])
            if token.value == "this":
                return This()
            return Name(token.value)
        if self._accept("("):
            node = self.parse_assignment()
            self._expect(")")
            return node
        if self._accept("["):
            return ArrayLiteral(self._parse_arguments("]"))
        self._error("Unexpected token")


@lru_cache(maxsize=512)
def compile_source(source: str) -> Program:
    """Parse source once; compiled programs are immutable and shared."""
    return Parser(source).parse_program()


def evaluate(source: str, env: Environment) -> Any:
    """Evaluate a snippet against an environment and return its value."""
    return compile_source(source).evaluate(env)
