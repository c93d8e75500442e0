"""
In-memory stand-ins for the host.

These implement the same surface as :class:`~firestarter.process_utils.CommandRunner`
and :class:`~firestarter.decisions.DecisionProvider` so every component can be
exercised without root, kernel modules, NICs or a BMC.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Mapping, Optional, Sequence, Union

from firestarter.decisions import Decision, DecisionContext, DecisionProvider
from firestarter.process_utils import EXIT_NOT_FOUND, CommandResult, Status, summarize_error


def make_result(
    argv: Sequence[str],
    stdout: str = "",
    stderr: str = "",
    returncode: Optional[int] = 0,
    timeout: bool = False,
    duration: float = 0.0,
) -> CommandResult:
    """Build a :class:`CommandResult` the way the real runner would classify it."""
    argv = [str(a) for a in argv]
    if timeout:
        return CommandResult(argv, Status.TIMEOUT, None, duration, stdout, stderr,
                             error_summary="timed out")
    if returncode == 0:
        return CommandResult(argv, Status.PASSED, 0, duration, stdout, stderr)
    return CommandResult(argv, Status.FAILED, returncode, duration, stdout, stderr,
                         error_summary=summarize_error(stderr, returncode))


Response = Union[CommandResult, Callable[[list[str]], CommandResult], dict]


class FakeCommandRunner:
    """
    Scriptable command runner.

    Register responses by argv prefix with :meth:`on`. A response may be a
    ``dict`` of :func:`make_result` keyword arguments, a ready
    :class:`CommandResult`, or a callable taking the argv. Passing several
    responses plays them in order and then repeats the last one. The longest
    matching prefix wins; unmatched commands succeed with empty output unless
    ``missing`` lists the binary.
    """

    def __init__(self, missing: Sequence[str] = ()):
        self._rules: list[tuple[tuple[str, ...], deque]] = []
        self.missing = set(missing)
        self.calls: list[list[str]] = []
        self.envs: list[Optional[dict]] = []

    def on(self, prefix: Union[str, Sequence[str]], *responses: Response, **result_kwargs) -> "FakeCommandRunner":
        if isinstance(prefix, str):
            prefix = prefix.split()
        if result_kwargs:
            responses = responses + (dict(result_kwargs),)
        if not responses:
            responses = ({},)
        self._rules.append((tuple(str(p) for p in prefix), deque(responses)))
        return self

    def _match(self, argv: list[str]) -> Optional[deque]:
        best = None
        best_len = -1
        for prefix, queue in self._rules:
            if tuple(argv[: len(prefix)]) == prefix and len(prefix) >= best_len:
                best, best_len = queue, len(prefix)
        return best

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        self.envs.append(dict(env) if env is not None else None)

        if argv and argv[0] in self.missing:
            return CommandResult(argv, Status.FAILED, EXIT_NOT_FOUND, 0.0,
                                 error_summary=f"Tool not found: {argv[0]}")

        queue = self._match(argv)
        if queue is None:
            return make_result(argv)
        response = queue.popleft() if len(queue) > 1 else queue[0]
        if callable(response):
            return response(argv)
        if isinstance(response, CommandResult):
            return response
        return make_result(argv, **response)

    def calls_to(self, *prefix: str) -> list[list[str]]:
        """All recorded invocations starting with *prefix*."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    def count(self, *prefix: str) -> int:
        return len(self.calls_to(*prefix))


class ScriptedDecisionProvider(DecisionProvider):
    """
    Plays back pre-recorded operator answers.

    When a script runs dry, ``decide`` falls back to ``default`` (or the
    context default), ``confirm`` returns the question's default, and
    ``read_value`` returns ``None``.
    """

    def __init__(
        self,
        decisions: Sequence[Decision] = (),
        confirms: Sequence[bool] = (),
        values: Sequence[str] = (),
        default: Optional[Decision] = None,
    ):
        self._decisions = deque(decisions)
        self._confirms = deque(confirms)
        self._values = deque(values)
        self._default = default
        self.contexts: list[DecisionContext] = []
        self.questions: list[str] = []
        self.prompts: list[str] = []

    def decide(self, context: DecisionContext) -> Decision:
        self.contexts.append(context)
        if self._decisions:
            return self._decisions.popleft()
        if self._default is not None and self._default in context.options:
            return self._default
        return context.options[0]

    def confirm(self, question: str, default: bool = True) -> bool:
        self.questions.append(question)
        if self._confirms:
            return self._confirms.popleft()
        return default

    def read_value(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        if self._values:
            return self._values.popleft()
        return None
