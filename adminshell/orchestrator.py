from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from adminshell.config import DEFAULT_COMMAND_TIMEOUT, INTERRUPT_EXIT_CODE, TIMEOUT_EXIT_CODE
from adminshell.context import ContextStore
from adminshell.errors import MalformedRequestError, NotConnectedError
from adminshell.models import (
    CommandOutcome, CommandRequest, CommandSequence, ElevationCredential, ExecutionResult,
    OutcomeStatus, PlannerReply, ToolCall, TurnReport,
)
from adminshell.ssh import ELEVATION_MISSING_MESSAGE, RemoteSession, is_streaming_command
from adminshell.tools import (
    command_tool_result, decode_tool_call, error_tool_result, sequence_tool_result,
    skipped_tool_result, summarize_tool_results,
)
from adminshell.utils import log_error


class Operator(Protocol):
    def present_command(self, request: CommandRequest) -> None: ...

    def confirm(self, question: str) -> bool: ...

    def show_result(self, request: CommandRequest, result: ExecutionResult) -> None: ...

    def show_reply(self, text: str) -> None: ...

    def notify(self, message: str, level: str = "info") -> None: ...

    def stream_chunk(self, text: str, is_error: bool = False) -> None: ...

    def watch_for_cancel(self, cancel: Callable[[], None]) -> Callable[[], None]: ...


class Planner(Protocol):
    def plan(self, messages: List[Dict[str, Any]], goal: str) -> PlannerReply: ...


class OrchestratorState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    AWAITING_RECOVERY_DECISION = "awaiting_recovery_decision"
    TERMINATED = "terminated"


@dataclass
class Connection:
    """A connected session plus the sudo secret supplied for it."""

    session: RemoteSession
    credential: Optional[ElevationCredential] = None


def explain_failure(result: ExecutionResult) -> str:
    if result.exit_code == TIMEOUT_EXIT_CODE and "timed out" in result.stderr:
        return f"The command did not finish in time and was stopped. {result.stderr}"
    if result.stderr == ELEVATION_MISSING_MESSAGE:
        return result.stderr
    detail = result.stderr.splitlines()[-1] if result.stderr else "no error output"
    return f"The command failed with exit code {result.exit_code} ({detail})."


def describe_tool_calls(calls: List[ToolCall]) -> str:
    lines = []
    for call in calls:
        if isinstance(call.arguments, dict) and isinstance(call.arguments.get("command"), str):
            lines.append(f"[{call.name}] $ {call.arguments['command']}")
        elif isinstance(call.arguments, dict) and isinstance(call.arguments.get("commands"), list):
            lines.append(f"[{call.name}] {len(call.arguments['commands'])} commands")
        else:
            lines.append(f"[{call.name}]")
    return "\n".join(lines)


class ExecutionOrchestrator:
    """Runs planner-requested commands through confirm, execute, observe and recover.

    Nothing reaches the remote session without the operator confirming that
    exact command, and nothing continues past a failure without the operator
    saying so.
    """

    def __init__(
        self,
        context: ContextStore,
        operator: Operator,
        planner: Optional[Planner] = None,
        connection: Optional[Connection] = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.context = context
        self.operator = operator
        self.planner = planner
        self.connection = connection
        self.timeout = timeout
        self.system_description = ""
        self.state = OrchestratorState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.session.is_connected

    # ----- single command -----

    def _execute(self, request: CommandRequest) -> ExecutionResult:
        if self.connection is None:
            return ExecutionResult(stdout="", stderr=str(NotConnectedError()), exit_code=1)
        session = self.connection.session
        credential = self.connection.credential if request.requires_elevation else None
        streaming = request.is_streaming
        if streaming is None:
            streaming = is_streaming_command(request.command)
        try:
            if streaming:
                return self._execute_streaming(session, request, credential)
            return session.execute(
                request.command,
                elevate=request.requires_elevation,
                credential=credential,
                timeout=self.timeout,
            )
        except NotConnectedError as exc:
            return ExecutionResult(stdout="", stderr=f"{exc}. Use /connect first.", exit_code=1)

    def _execute_streaming(
        self,
        session: RemoteSession,
        request: CommandRequest,
        credential: Optional[ElevationCredential],
    ) -> ExecutionResult:
        handle = session.execute_streaming(
            request.command,
            elevate=request.requires_elevation,
            credential=credential,
            on_output=lambda text: self.operator.stream_chunk(text, False),
            on_error=lambda text: self.operator.stream_chunk(text, True),
        )
        stop_watching = self.operator.watch_for_cancel(handle.cancel)
        try:
            return handle.result()
        finally:
            stop_watching()

    def _process(self, request: CommandRequest, continue_question: str) -> Tuple[CommandOutcome, bool]:
        self.state = OrchestratorState.AWAITING_CONFIRMATION
        self.operator.present_command(request)
        if not self.operator.confirm("Execute this command?"):
            return CommandOutcome(request=request, status=OutcomeStatus.DECLINED), True

        self.state = OrchestratorState.EXECUTING
        result = self._execute(request)
        self.context.append_command_result(request.command, result.combined_output, result.exit_code)
        self.operator.show_result(request, result)

        self.state = OrchestratorState.EVALUATING
        if result.exit_code == 0 or (result.aborted and result.exit_code == INTERRUPT_EXIT_CODE):
            return CommandOutcome(request=request, status=OutcomeStatus.COMPLETED, result=result), True

        self.state = OrchestratorState.AWAITING_RECOVERY_DECISION
        self.operator.notify(explain_failure(result), "error")
        if self.operator.confirm(continue_question):
            return CommandOutcome(request=request, status=OutcomeStatus.FAILED, result=result), True
        return CommandOutcome(request=request, status=OutcomeStatus.ABORTED_BY_OPERATOR, result=result), False

    def run_command(self, request: CommandRequest) -> CommandOutcome:
        outcome, _ = self._process(request, "Continue with next commands?")
        return outcome

    # ----- sequences -----

    def run_sequence(self, sequence: CommandSequence) -> TurnReport:
        report = TurnReport()
        for index, request in enumerate(sequence.commands):
            outcome, proceed = self._process(request, "Continue with remaining commands?")
            report.outcomes.append(outcome)
            if not proceed:
                report.aborted_by_operator = True
                report.outcomes.extend(
                    CommandOutcome(request=skipped, status=OutcomeStatus.SKIPPED)
                    for skipped in sequence.commands[index + 1:]
                )
                break
        return report

    # ----- planner tool calls -----

    def handle_tool_calls(self, calls: List[ToolCall]) -> Tuple[List[Dict[str, Any]], TurnReport]:
        results: List[Dict[str, Any]] = []
        report = TurnReport()
        for call in calls:
            if report.aborted_by_operator or report.error:
                results.append(skipped_tool_result(call.id))
                continue
            try:
                request = decode_tool_call(call)
            except MalformedRequestError as exc:
                report.error = str(exc)
                self.operator.notify(f"Planner sent an invalid request: {exc}", "error")
                results.append(error_tool_result(call.id, str(exc)))
                continue

            if isinstance(request, CommandSequence):
                sub_report = self.run_sequence(request)
                report.outcomes.extend(sub_report.outcomes)
                report.aborted_by_operator = sub_report.aborted_by_operator
                results.append(sequence_tool_result(call.id, sub_report.outcomes))
            elif isinstance(request, CommandRequest):
                outcome = self.run_command(request)
                report.outcomes.append(outcome)
                report.aborted_by_operator = outcome.status == OutcomeStatus.ABORTED_BY_OPERATOR
                results.append(command_tool_result(call.id, outcome))
            else:
                raise MalformedRequestError(f"unsupported request type: {type(request).__name__}")
        return results, report

    # ----- planner turn -----

    def _ask_planner(self) -> PlannerReply:
        reply = self.planner.plan(self.context.get_messages(), self.system_description)
        text = reply.text or describe_tool_calls(reply.tool_calls)
        self.context.append_dialogue("assistant", text, content=reply.content)
        if reply.text:
            self.operator.show_reply(reply.text)
        return reply

    def run_turn(self, message: str) -> TurnReport:
        report = TurnReport()
        if not self.is_connected:
            self.operator.notify("Not connected to any server. Use /connect first.", "warning")
            return report
        if self.planner is None:
            report.error = "no planner configured"
            self.operator.notify("No planner is configured.", "error")
            return report

        self.context.append_dialogue("user", message)
        try:
            reply = self._ask_planner()
            while reply.tool_calls:
                results, round_report = self.handle_tool_calls(reply.tool_calls)
                report.outcomes.extend(round_report.outcomes)
                self.context.append_dialogue("tool", summarize_tool_results(results), content=results)
                if round_report.aborted_by_operator:
                    report.aborted_by_operator = True
                    self.operator.notify("Aborted by operator.", "warning")
                    break
                if round_report.error:
                    report.error = round_report.error
                    break
                reply = self._ask_planner()
        except Exception as exc:
            log_error(f"planner error: {exc}")
            report.error = str(exc)
            self.operator.notify(f"Error: {exc}", "error")
        finally:
            self.state = OrchestratorState.TERMINATED
            self.context.flush()
        return report
