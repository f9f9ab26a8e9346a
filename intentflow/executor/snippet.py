"""Deterministic snippet path: parse recorded Playwright scripts into primitive calls.

Snippets are Playwright-style statements as produced by the recorder, e.g.

    await page.fill('#username', 'alice');
    await page.getByRole('button', { name: 'Sign in' }).click();

They are never evaluated. Each statement is parsed with `ast` (after
light JavaScript-to-Python normalization) and translated into a
PrimitiveCall on the browser collaborator.
"""
import ast
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from intentflow.errors import AutomationError, SnippetParseError
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


# Primitive names a parsed call may dispatch to
PRIMITIVES = frozenset({
    "goto", "click", "fill", "select", "wait_for", "press", "hover", "reload",
    "wait_for_load_state", "wait_for_timeout", "scroll_into_view", "screenshot",
})

# Page-level methods taking a selector as first argument: js name -> primitive
_PAGE_SELECTOR_ACTIONS = {
    "click": "click",
    "dblclick": "click",
    "check": "click",
    "tap": "click",
    "fill": "fill",
    "type": "fill",
    "selectOption": "select",
    "hover": "hover",
    "waitForSelector": "wait_for",
    "press": "press",
}

# Locator-level terminal methods: js name -> primitive
_LOCATOR_ACTIONS = {
    "click": "click",
    "dblclick": "click",
    "check": "click",
    "tap": "click",
    "fill": "fill",
    "type": "fill",
    "pressSequentially": "fill",
    "selectOption": "select",
    "hover": "hover",
    "press": "press",
    "waitFor": "wait_for",
    "scrollIntoViewIfNeeded": "scroll_into_view",
}

_TARGETED_PRIMITIVES = frozenset({"click", "fill", "select", "wait_for", "hover", "scroll_into_view"})

_JS_CONSTANTS = {"true": True, "false": False, "null": None, "undefined": None}

# Upper bound for waits and timeouts taken from snippet arguments
MAX_WAIT_MS = 10 * 60 * 1000


@dataclass(frozen=True)
class PrimitiveCall:
    """One browser primitive invocation."""
    action: str
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        parts = [repr(a) for a in self.args] + [f"{k}={v!r}" for k, v in self.kwargs.items()]
        return f"{self.action}({', '.join(parts)})"

    @property
    def target(self) -> Optional[str]:
        """The locator this call acts on, if any."""
        if self.action == "press":
            return self.kwargs.get("locator")
        if self.action in _TARGETED_PRIMITIVES and self.args:
            return str(self.args[0])
        return None


def _quote(text: str) -> str:
    return json.dumps(text)


def normalize_source(code: str) -> str:
    """Rewrite JavaScript surface syntax into something `ast` can parse."""
    # Template literals without interpolation -> plain strings
    code = re.sub(r"`([^`$]*)`", lambda m: _quote(m.group(1)), code)
    lines = []
    for raw in code.splitlines():
        line = raw.strip()
        if not line or line.startswith(("//", "console.")):
            continue
        line = re.sub(r"^await\s+", "", line)
        line = re.sub(r"\(\s*await\s+", "(", line)
        # Statement separators outside of string literals
        for stmt in _split_statements(line):
            stmt = stmt.strip()
            if stmt:
                lines.append(re.sub(r"^await\s+", "", stmt))
    return "\n".join(lines)


def _integer(value: Any, what: str, minimum: int, maximum: int) -> int:
    """A whole-number argument within [minimum, maximum]; anything else is a parse error."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SnippetParseError(f"{what} must be a number, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise SnippetParseError(f"{what} must be finite, got {value!r}")
    if not minimum <= value <= maximum:
        raise SnippetParseError(f"{what} must be between {minimum} and {maximum}, got {value!r}")
    return int(value)


def _split_statements(line: str) -> List[str]:
    parts, current, quote = [], [], None
    for ch in line:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == ";":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


class SnippetParser:
    """
    Translates snippet source into a list of PrimitiveCall.

    Only calls rooted at `page` (or `expect(...)` visibility assertions)
    are accepted; anything else raises SnippetParseError.
    """

    def parse(self, code: str) -> List[PrimitiveCall]:
        source = normalize_source(code or "")
        if not source:
            raise SnippetParseError("Snippet is empty")

        try:
            tree = ast.parse(source, mode="exec")
        except SyntaxError as e:
            raise SnippetParseError(f"Cannot parse snippet line {e.lineno}: {e.msg}") from e
        except (ValueError, RecursionError) as e:
            raise SnippetParseError(f"Cannot parse snippet: {e}") from e

        calls: List[PrimitiveCall] = []
        for node in tree.body:
            if not isinstance(node, ast.Expr) or not isinstance(node.value, ast.Call):
                raise SnippetParseError(f"Unsupported statement: {ast.unparse(node)}")
            call = self._statement(node.value)
            if call is not None:
                calls.append(call)

        if not calls:
            raise SnippetParseError("Snippet contains no browser actions")
        return calls

    # ----- statements ------------------------------------------------------

    def _statement(self, node: ast.Call) -> Optional[PrimitiveCall]:
        func = node.func
        if not isinstance(func, ast.Attribute):
            raise SnippetParseError(f"Unsupported call: {ast.unparse(node)}")

        method = func.attr
        target = func.value

        # console.log(...) is recorder noise
        if isinstance(target, ast.Name) and target.id == "console":
            return None

        args = [self._literal(a) for a in node.args]

        # expect(locator).toBeVisible()
        if isinstance(target, ast.Call) and isinstance(target.func, ast.Name) and target.func.id == "expect":
            if method != "toBeVisible" or len(target.args) != 1:
                raise SnippetParseError(f"Unsupported assertion: {ast.unparse(node)}")
            return PrimitiveCall("wait_for", (self._locator(target.args[0]),))

        # page.keyboard.press(key)
        if isinstance(target, ast.Attribute) and target.attr == "keyboard" and self._is_page(target.value):
            if method != "press" or len(args) != 1:
                raise SnippetParseError(f"Unsupported keyboard call: {ast.unparse(node)}")
            return PrimitiveCall("press", (str(args[0]),))

        if self._is_page(target):
            return self._page_call(method, args, node)

        return self._locator_call(self._locator(target), method, args, node)

    def _page_call(self, method: str, args: List[Any], node: ast.Call) -> PrimitiveCall:
        options = args[-1] if args and isinstance(args[-1], dict) else {}
        positional = [a for a in args if not isinstance(a, dict)]

        if method == "goto" and positional:
            return PrimitiveCall("goto", (str(positional[0]),))
        if method == "reload":
            return PrimitiveCall("reload")
        if method == "waitForTimeout" and positional:
            return PrimitiveCall("wait_for_timeout", (_integer(positional[0], "waitForTimeout", 0, MAX_WAIT_MS),))
        if method == "waitForLoadState":
            return PrimitiveCall("wait_for_load_state", (str(positional[0]) if positional else "load",))
        if method == "screenshot":
            return PrimitiveCall("screenshot")

        primitive = _PAGE_SELECTOR_ACTIONS.get(method)
        if primitive is None or not positional:
            raise SnippetParseError(f"Unsupported page call: {ast.unparse(node)}")
        return self._with_target(primitive, str(positional[0]), positional[1:], options, node)

    def _locator_call(self, locator: str, method: str, args: List[Any], node: ast.Call) -> PrimitiveCall:
        primitive = _LOCATOR_ACTIONS.get(method)
        if primitive is None:
            raise SnippetParseError(f"Unsupported locator action: {ast.unparse(node)}")
        options = args[-1] if args and isinstance(args[-1], dict) else {}
        positional = [a for a in args if not isinstance(a, dict)]
        return self._with_target(primitive, locator, positional, options, node)

    def _with_target(self, primitive: str, locator: str, rest: List[Any], options: Dict, node: ast.Call) -> PrimitiveCall:
        if primitive in ("fill", "select"):
            if not rest:
                raise SnippetParseError(f"{primitive} needs a value: {ast.unparse(node)}")
            value = rest[0]
            if isinstance(value, list):
                value = value[0] if value else ""
            return PrimitiveCall(primitive, (locator, str(value)))
        if primitive == "press":
            if not rest:
                raise SnippetParseError(f"press needs a key: {ast.unparse(node)}")
            return PrimitiveCall("press", (str(rest[0]),), {"locator": locator})
        if primitive == "wait_for":
            kwargs = {"timeout_ms": _integer(options["timeout"], "timeout", 0, MAX_WAIT_MS)} if "timeout" in options else {}
            return PrimitiveCall("wait_for", (locator,), kwargs)
        return PrimitiveCall(primitive, (locator,))

    # ----- locators --------------------------------------------------------

    def _is_page(self, node: ast.AST) -> bool:
        return isinstance(node, ast.Name) and node.id == "page"

    def _locator(self, node: ast.AST) -> str:
        """Build a selector string from a locator chain rooted at `page`."""
        if not isinstance(node, ast.Call) or not isinstance(node.func, ast.Attribute):
            raise SnippetParseError(f"Unsupported locator: {ast.unparse(node)}")

        method = node.func.attr
        parent = node.func.value
        args = [self._literal(a) for a in node.args]
        options = args[-1] if args and isinstance(args[-1], dict) else {}
        positional = [a for a in args if not isinstance(a, dict)]

        base = None if self._is_page(parent) else self._locator(parent)

        if method in ("first", "last"):
            if base is None:
                raise SnippetParseError(f"{method}() needs a locator")
            return f"{base} >> nth={0 if method == 'first' else -1}"
        if method == "nth":
            if base is None or not positional:
                raise SnippetParseError("nth() needs a locator and an index")
            return f"{base} >> nth={_integer(positional[0], 'nth', -10000, 10000)}"

        if not positional:
            raise SnippetParseError(f"Locator call without argument: {ast.unparse(node)}")
        text = str(positional[0])
        exact = bool(options.get("exact"))

        if method == "locator":
            selector = text
        elif method == "getByRole":
            name = options.get("name")
            selector = f"role={text}[name={_quote(str(name))}]" if name else f"role={text}"
        elif method == "getByText":
            selector = f"text={_quote(text)}" if exact else f"text={text}"
        elif method == "getByLabel":
            selector = f"label={_quote(text)}" if exact else f"label={text}"
        elif method == "getByPlaceholder":
            selector = f"[placeholder={_quote(text)}]"
        elif method == "getByTestId":
            selector = f"[data-testid={_quote(text)}]"
        elif method == "getByTitle":
            selector = f"[title={_quote(text)}]"
        elif method == "getByAltText":
            selector = f"[alt={_quote(text)}]"
        else:
            raise SnippetParseError(f"Unsupported locator method: {method}")

        return selector if base is None else f"{base} >> {selector}"

    def _literal(self, node: ast.AST) -> Any:
        """Evaluate a literal argument (strings, numbers, JS constants, object literals)."""
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name) and node.id in _JS_CONSTANTS:
            return _JS_CONSTANTS[node.id]
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub) and isinstance(node.operand, ast.Constant):
            value = node.operand.value
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise SnippetParseError(f"Cannot negate a non-number: {ast.unparse(node)}")
            return -value
        if isinstance(node, ast.Dict):
            result = {}
            for key, value in zip(node.keys, node.values):
                if isinstance(key, ast.Name):
                    result[key.id] = self._literal(value)
                elif isinstance(key, ast.Constant):
                    result[str(key.value)] = self._literal(value)
                else:
                    raise SnippetParseError(f"Unsupported object key: {ast.unparse(node)}")
            return result
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._literal(e) for e in node.elts]
        # A Python set literal is how `{ name }` parses; no shorthand properties
        raise SnippetParseError(f"Only literal arguments are allowed, got: {ast.unparse(node)}")


def run_calls(
    calls: List[PrimitiveCall],
    browser,
    checkpoint: Callable[[], None],
    timeout_ms: Optional[Callable[[int], int]] = None,
    logger=None,
):
    """
    Dispatch parsed calls to the browser, checking for cancellation and
    deadlines before each one.

    Args:
        calls: Parsed primitive calls
        browser: BrowserPrimitives implementation
        checkpoint: Called before every primitive; raises to stop
        timeout_ms: Optional clamp applied to per-action timeouts
    """
    for call in calls:
        if call.action not in PRIMITIVES:
            raise SnippetParseError(f"Primitive not allowed: {call.action}")
        checkpoint()
        kwargs = dict(call.kwargs)
        if timeout_ms is not None and call.action in ("click", "fill", "select", "wait_for", "hover", "scroll_into_view"):
            kwargs["timeout_ms"] = timeout_ms(kwargs.get("timeout_ms") or config.action_timeout_ms)
        if logger:
            logger.debug(f"  → {call.describe()}")
        try:
            getattr(browser, call.action)(*call.args, **kwargs)
        except AutomationError as e:
            # Tag the failure with the call that raised it, for recovery
            e.action = e.action or call.action
            e.selector = e.selector or call.target
            raise
    checkpoint()


class SnippetExecutor:
    """Runs a step's snippet on the deterministic path."""

    def __init__(self, parser: Optional[SnippetParser] = None):
        self.parser = parser or SnippetParser()
        self.logger = setup_logger("SnippetExecutor")

    def run(
        self,
        snippet: str,
        browser,
        control,
        replace_locator: Optional[Tuple[Optional[str], str]] = None,
        timeout_ms: Optional[int] = None
    ) -> List[PrimitiveCall]:
        """
        Parse and run a snippet.

        Args:
            replace_locator: (old, new) - calls targeting `old` use `new`
                instead; with old None the first targeted call is rewritten
            timeout_ms: Minimum per-action timeout for this run

        Raises:
            SnippetParseError: The snippet could not be translated
            AutomationError: A primitive failed
        """
        calls = self.parser.parse(snippet)
        if replace_locator:
            calls = retarget(calls, *replace_locator)

        def bounded(requested: int) -> int:
            return control.bounded_timeout(max(requested, timeout_ms or 0))

        self.logger.debug(f"Running snippet ({len(calls)} actions)")
        run_calls(calls, browser, control.checkpoint, bounded, self.logger)
        return calls


def retarget(calls: List[PrimitiveCall], old: Optional[str], new: str) -> List[PrimitiveCall]:
    """Swap the locator of calls that target `old`; if none do, of the first targeted call."""
    matches_old = old is not None and any(c.target == old for c in calls)
    result, swapped = [], False
    for call in calls:
        target = call.target
        if target is not None and (target == old if matches_old else not swapped):
            swapped = True
            if call.action == "press":
                call = PrimitiveCall(call.action, call.args, {**call.kwargs, "locator": new})
            else:
                call = PrimitiveCall(call.action, (new,) + tuple(call.args[1:]), call.kwargs)
        result.append(call)
    return result
