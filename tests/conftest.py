import pytest

from intentflow.errors import ElementNotFoundError
from intentflow.executor.browser import BrowserPrimitives
from intentflow.executor.control import RunControl
from intentflow.executor.reasoning import ReasoningEngine
from intentflow.recovery.hybrid import HybridErrorRecovery
from intentflow.recovery.sandbox import SolutionSandbox
from intentflow.recovery.solution_library import InMemorySolutionStore, SolutionLibrary
from intentflow.recovery.strategies import BuiltInStrategies
from intentflow.recovery.synthesizer import AISolutionSynthesizer
from intentflow.utils.audit_log import AuditLog
from intentflow.utils.config import config
from intentflow.utils.rate_limiter import RateLimiterManager


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeBrowser(BrowserPrimitives):
    """
    Scripted browser.

    Only locators in `elements` exist; anything else raises
    ElementNotFoundError. `fail(action, locator, *errors)` queues errors
    raised (and consumed) by the next matching calls.
    """

    def __init__(self, elements=(), url="https://example.com/login", title="Login"):
        self.elements = set(elements)
        self.url = url
        self.title = title
        self.calls = []
        self.failures = {}

    def fail(self, action, locator, *errors):
        self.failures.setdefault((action, locator), []).extend(errors)
        return self

    def actions(self, name=None):
        return [c for c in self.calls if name is None or c[0] == name]

    def _do(self, action, locator=None, *extra):
        self.calls.append((action, locator) + extra)
        queued = self.failures.get((action, locator))
        if queued:
            raise queued.pop(0)
        if locator is not None and locator not in self.elements:
            raise ElementNotFoundError(
                f"No element matches selector {locator}", selector=locator, url=self.url, action=action
            )

    def goto(self, url):
        self._do("goto", None, url)
        self.url = url

    def click(self, locator, timeout_ms=None):
        self._do("click", locator)

    def fill(self, locator, value, timeout_ms=None):
        self._do("fill", locator, value)

    def select(self, locator, value, timeout_ms=None):
        self._do("select", locator, value)

    def wait_for(self, locator, timeout_ms=None):
        self._do("wait_for", locator)

    def press(self, key, locator=None):
        self._do("press", locator, key)

    def screenshot(self):
        self.calls.append(("screenshot", None))
        return b"\x89PNG"

    def hover(self, locator, timeout_ms=None):
        self._do("hover", locator)

    def reload(self):
        self._do("reload")

    def wait_for_load_state(self, state="load", timeout_ms=None):
        self._do("wait_for_load_state", None, state)

    def wait_for_timeout(self, ms):
        self._do("wait_for_timeout", None, ms)

    def scroll_into_view(self, locator, timeout_ms=None):
        self._do("scroll_into_view", locator)

    def force_click(self, locator, timeout_ms=None):
        self._do("force_click", locator)

    def clear(self, locator, timeout_ms=None):
        self._do("clear", locator)

    def page_context(self):
        return {"pageTitle": self.title, "url": self.url, "domSummary": "<button>Submit</button>"}

    @property
    def current_url(self):
        return self.url


class FakeReasoningEngine(ReasoningEngine):
    """Answers with the first rule whose marker appears in the instruction."""

    def __init__(self, default=""):
        self.rules = []
        self.default = default
        self.prompts = []

    def when(self, marker, response):
        self.rules.append((marker, response))
        return self

    def reason(self, instruction, context):
        self.prompts.append(instruction)
        for marker, response in self.rules:
            if marker in instruction:
                if isinstance(response, BaseException):
                    raise response
                return response
        return self.default


# Markers of the two prompt kinds the engine receives
ACTION_MARKER = "Perform this browser task step"
SOLUTION_MARKER = "ERROR DETAILS"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "artifacts_dir", tmp_path / "artifacts")
    monkeypatch.setattr(config, "save_screenshots", False)
    monkeypatch.setattr(config, "backoff_base_ms", 1)
    monkeypatch.setattr(config, "backoff_max_ms", 5)
    monkeypatch.setattr(config, "halt_on_failure", False)
    return config


@pytest.fixture
def audit(tmp_path):
    return AuditLog(tmp_path / "audit")


@pytest.fixture
def limiters():
    return RateLimiterManager()


@pytest.fixture
def library():
    return SolutionLibrary(InMemorySolutionStore())


@pytest.fixture
def control():
    return RunControl()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def engine():
    return FakeReasoningEngine()


@pytest.fixture
def sandbox(audit, limiters):
    return SolutionSandbox(audit=audit, limiters=limiters)


@pytest.fixture
def make_recovery(library, sandbox, limiters):
    """Build a HybridErrorRecovery wired to the test doubles."""

    def factory(engine=None, **kwargs):
        synthesizer = AISolutionSynthesizer(engine, limiters=limiters) if engine is not None else None
        return HybridErrorRecovery(
            library,
            strategies=kwargs.pop("strategies", None) or BuiltInStrategies(settle_ms=0),
            synthesizer=synthesizer,
            sandbox=sandbox,
            **kwargs
        )

    return factory
