import argparse
import json
import os
import re
import sys
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .commands import CommandContext, CommandRegistry, CommandResult, default_registry
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .context import ContextWindow, TokenEstimator, is_important, make_estimator
from .errors import AgentError, ConfigError, ContextOverflowError
from .state import SessionState, SessionStore
from .tools import ToolRegistry

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
MAX_ARG_LOG = 1000
MAX_PREVIEW = 500

DEFAULT_CONTEXT_LIMIT = 32000
MODEL_CONTEXT_LIMITS = (
    ("claude-3.5-sonnet", 200000),
    ("claude-3.5-haiku", 200000),
    ("claude-3-opus", 200000),
    ("gpt-4o", 128000),
    ("gpt-4-turbo", 128000),
    ("gemini-pro", 1000000),
    ("llama", 32000),
)

# Tools whose path argument is a file the user is working on.
FOCUS_TOOLS = {"read_file", "write_file", "edit_file"}
# Tools whose path argument is a directory worth remembering.
LOCATION_TOOLS = {"find_files", "list_directory"}

CONTINUE_PROMPT = (
    "Continue task execution. Call the next required function immediately "
    "or provide task completion summary."
)

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


def get_model_context_limit(model: str) -> int:
    """Context window size for a model id, by substring match."""
    for needle, limit in MODEL_CONTEXT_LIMITS:
        if needle in model:
            return limit
    return DEFAULT_CONTEXT_LIMIT


def call_llm(
    model_id,
    messages,
    tools,
    max_output_tokens,
    temperature,
    *,
    api_key=None,
    base_url=None,
    verbose=False,
):
    """Call OpenRouter through LiteLLM. Returns (message, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    model_str = model_id if model_id.startswith("openrouter/") else f"openrouter/{model_id}"
    if verbose:
        extra = f", temperature={temperature}" if temperature is not None else ""
        fmt.model_info(
            f"Calling model {model_str} with max_tokens={max_output_tokens}{extra}"
        )

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        api_key=api_key,
    )
    if tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"
    if temperature is not None:
        completion_kwargs["temperature"] = temperature
    if base_url:
        completion_kwargs["api_base"] = base_url

    try:
        response = litellm.completion(**completion_kwargs)
    except litellm.ContextWindowExceededError:
        raise ContextOverflowError("context window exceeded (typed)")
    except litellm.BadRequestError as e:
        if _CONTEXT_OVERFLOW_RE.search(str(e)):
            raise ContextOverflowError(f"context window exceeded (inferred): {e}")
        raise AgentError(f"LLM call failed: {e}")
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}")

    if not response.choices:
        raise AgentError("no response from AI")
    choice = response.choices[0]
    return choice.message, choice.finish_reason


def track_file_operation(session: SessionState, tool_name: str, args: dict) -> None:
    """Record files and directories touched by a successful tool call."""
    path = args.get("path") or args.get("file_path")
    if not isinstance(path, str) or not path:
        return
    path = os.path.abspath(path)
    if tool_name in FOCUS_TOOLS:
        session.add_focused_file(path)
        session.add_recent_file(path)
    elif tool_name in LOCATION_TOOLS:
        session.add_recent_file(path)


class Agent:
    """One conversation with the model plus the session it works in.

    The context window holds the conversation; the session state is rendered
    into a fresh system preamble on every model call. A failed model call
    leaves the context window as it was before the call.
    """

    def __init__(
        self,
        *,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 4000,
        temperature: float | None = 0.7,
        max_context_tokens: int | None = None,
        reserved_tokens: int = 2000,
        summary_tokens: int = 500,
        recent_messages: int = 10,
        estimator: TokenEstimator | None = None,
        max_turns: int = 25,
        system_prompt: str | None = None,
        tools: ToolRegistry | None = None,
        session: SessionState | None = None,
        store: SessionStore | None = None,
        base_dir: str | None = None,
        verbose: bool = False,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.max_context_tokens = max_context_tokens
        self.max_turns = max_turns
        self.base_prompt = system_prompt
        self.tools = tools if tools is not None else ToolRegistry()
        self.store = store
        self.verbose = verbose
        self.commands: CommandRegistry = default_registry()

        self.context_window = ContextWindow(
            max_context_tokens or get_model_context_limit(model),
            reserved_tokens=reserved_tokens,
            summary_tokens=summary_tokens,
            recent_messages=recent_messages,
            estimator=estimator,
        )

        if session is None:
            if store is not None:
                session = store.load_or_new(base_dir)
            else:
                session = SessionState.new(base_dir)
        session.detect_project_type()
        self.session = session

    # -- Capabilities exposed to slash commands -----------------------------

    def clear_conversation(self) -> None:
        self.context_window.clear_conversation()

    def get_context_stats(self) -> str:
        return self.context_window.get_context_stats()

    def get_context_usage_percentage(self) -> float:
        return self.context_window.get_usage_percentage()

    def get_current_model(self) -> str:
        return self.model

    def set_model(self, model: str) -> None:
        self.model = model
        if self.max_context_tokens is None:
            self.context_window.max_tokens = get_model_context_limit(model)
            self.context_window.trim_if_needed()

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose

    def is_verbose(self) -> bool:
        return self.verbose

    def command_context(self) -> CommandContext:
        return CommandContext(
            conversation=self,
            session=self.session,
            model=self,
            display=self,
            registry=self.commands,
        )

    def run_command(self, line: str) -> CommandResult | None:
        """Dispatch a slash command. Returns None if line is not one."""
        result = self.commands.execute(line, self.command_context())
        if result is not None:
            self.save_session()
        return result

    # -- Prompt construction ------------------------------------------------

    def system_prompt(self) -> str:
        if self.base_prompt is not None:
            prompt = self.base_prompt
        else:
            prompt = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()

        tools = self.tools.list()
        if tools:
            listing = "\n".join(f"- {t.name}: {t.description}" for t in tools)
            prompt += f"\n\nYou have access to these functions:\n{listing}"

        context_info = self.build_context_info()
        if context_info:
            prompt += "\n\n" + context_info
        return prompt

    def build_context_info(self) -> str:
        """Session digest for the system preamble, or "" if there is nothing useful."""
        s = self.session
        lines = ["CURRENT SESSION CONTEXT:", "========================"]
        meaningful = False

        if s.project_root:
            project = f"Project: {Path(s.project_root).name}"
            if s.project_type and s.project_type != "unknown":
                project += f" ({s.project_type})"
            lines.append(project)
            meaningful = True
        if s.working_dir:
            lines.append(f"Working Directory: {s.working_dir}")
        if s.current_task:
            lines.append(f"Current Task: {s.current_task}")
            meaningful = True

        if s.focused_files:
            meaningful = True
            lines.append("Recently Active Files:")
            lines.extend(f"  {i}. {f}" for i, f in enumerate(s.focused_files[:3], 1))
            if len(s.focused_files) > 3:
                lines.append(f"  ... and {len(s.focused_files) - 3} more files")

        focused = set(s.focused_files)
        others = [f for f in s.recent_files if f not in focused][:3]
        if others:
            lines.append("Other Recent Files:")
            lines.extend(f"  {i}. {f}" for i, f in enumerate(others, 1))

        if s.bookmarks:
            lines.append(f"Available Bookmarks: {len(s.bookmarks)}")
        if s.task_history:
            lines.append(f"Completed Tasks: {len(s.task_history)}")
            lines.append(f"Last Completed: {s.task_history[-1].description}")

        if not meaningful:
            return ""
        return "\n".join(lines) + "\n"

    def outbound_messages(self) -> list[dict]:
        """System preamble followed by the context window's contextual messages."""
        messages = [{"role": "system", "content": self.system_prompt()}]
        messages.extend(m.as_dict() for m in self.context_window.get_contextual_messages())
        return messages

    # -- Turn processing ----------------------------------------------------

    def add_message(self, role: str, content: str):
        return self.context_window.add_message(
            role, content, is_important(role, content)
        )

    def _chat(self):
        messages = self.outbound_messages()
        tools = self.tools.schemas() or None
        t0 = time.monotonic()
        msg, finish_reason = call_llm(
            self.model,
            messages,
            tools,
            self.max_output_tokens,
            self.temperature,
            api_key=self.api_key,
            base_url=self.base_url,
            verbose=self.verbose,
        )
        if self.verbose:
            fmt.llm_timing(time.monotonic() - t0, finish_reason)
        return msg

    def process_message(self, user_message: str) -> str:
        """Run one user turn and return the text to show the user.

        Raises AgentError if the first model call fails; the context window is
        restored to its state before the user message was added.
        """
        snapshot = self.context_window.snapshot()
        self.add_message("user", user_message)
        try:
            msg = self._chat()
        except AgentError:
            self.context_window.restore(snapshot)
            raise

        content = msg.content or ""
        self.add_message("assistant", content)

        if msg.tool_calls:
            answer = self._run_tool_calls(msg.tool_calls, content)
        else:
            answer = content

        if self.verbose:
            fmt.context_stats("Context", self.context_window.current_tokens())
            fmt.context_usage(self.get_context_usage_percentage())
        self.save_session()
        return answer

    def _run_tool_calls(self, tool_calls, first_response: str) -> str:
        results = [first_response] if first_response else []
        current = tool_calls
        rounds = 0

        while current:
            rounds += 1
            if rounds > self.max_turns:
                if self.verbose:
                    fmt.warning(f"stopped after {self.max_turns} tool rounds")
                break

            lines = [self._execute_tool_call(tc) for tc in current]
            snapshot = self.context_window.snapshot()
            self.add_message(
                "user",
                "Tool execution results:\n"
                + "\n".join(lines)
                + "\n\n"
                + CONTINUE_PROMPT,
            )
            try:
                msg = self._chat()
            except AgentError as e:
                self.context_window.restore(snapshot)
                results.append(f"\nFailed to get follow-up response: {e}")
                break

            follow_up = msg.content or ""
            self.add_message("assistant", follow_up)
            results.append(f"\n\n{follow_up}")
            current = msg.tool_calls or []

        return "\n".join(results)

    def _execute_tool_call(self, tool_call) -> str:
        """Run one tool call and return the result line fed back to the model."""
        name = tool_call.function.name
        raw_args = (tool_call.function.arguments or "").strip()

        if raw_args in ("", "{}"):
            args = {}
        else:
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError as e:
                if self.verbose:
                    fmt.tool_error(name, f"invalid JSON: {e}")
                return f"{name} error: failed to parse arguments {raw_args!r}: {e}"
            if not isinstance(args, dict):
                return f"{name} error: arguments must be a JSON object"

        if self.verbose:
            pretty = json.dumps(args, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_call(name, pretty)

        result = self.tools.execute(name, args)
        if not result.success:
            if self.verbose:
                fmt.tool_error(name, result.error)
            return f"{name} error: {result.error}"

        track_file_operation(self.session, name, args)
        if self.verbose:
            fmt.tool_result(name, result.result[:MAX_PREVIEW])
        return f"{name} result: {result.result}"

    # -- Persistence --------------------------------------------------------

    def save_session(self) -> None:
        """Persist session state in the background; never raises."""
        if self.store is not None:
            self.store.save_in_background(self.session)

    def close(self) -> None:
        if self.store is not None:
            self.store.flush()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tern",
        usage="%(prog)s [options] <message...>\n       %(prog)s [options] /<command> [args]",
        description=(
            "A terminal coding assistant with a bounded conversation context "
            "and persistent session state."
        ),
        epilog=(
            "Session state (tasks, focus, bookmarks) persists across runs. The "
            "conversation does not: each run starts with an empty one, so /clear "
            "and /stats only see the current run."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "message",
        nargs="*",
        help="Message for the model, or a slash command such as /task or /focus.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: anthropic/claude-3.5-sonnet).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="OpenRouter API key (overrides OPENROUTER_API_KEY).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider base URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 4000).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size (default: derived from the model).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum tool rounds per message (default: 25).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Project directory (default: current directory).",
    )
    parser.add_argument(
        "--session-file",
        default=_UNSET,
        help="Where to keep session state (default: ~/.tern_session.json).",
    )
    parser.add_argument(
        "--no-session",
        action="store_true",
        default=_UNSET,
        help="Neither load nor save session state.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (tern.toml) template.",
    )
    return parser


def resolve_api_key(args) -> str:
    api_key = args.api_key or os.environ.get("OPENROUTER_API_KEY")
    if not api_key:
        raise ConfigError(
            "OpenRouter API key is required. Set the OPENROUTER_API_KEY "
            "environment variable or add api_key to the config file."
        )
    return api_key


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tern")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    if not args.message:
        parser.error("a message or /command is required")

    fmt.init(color=args.color, no_color=args.no_color)

    try:
        exit_code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(exit_code)


def _run_main(args) -> int:
    line = " ".join(args.message).strip()
    store = None if args.no_session else SessionStore(args.session_file)

    agent = Agent(
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        max_context_tokens=args.max_context_tokens,
        reserved_tokens=args.reserved_tokens,
        summary_tokens=args.summary_tokens,
        recent_messages=args.recent_messages,
        estimator=make_estimator(args.token_estimator, args.chars_per_token),
        max_turns=args.max_turns,
        system_prompt=args.system_prompt,
        store=store,
        base_dir=args.base_dir,
        verbose=not args.quiet,
    )
    try:
        if line.startswith("/"):
            result = agent.run_command(line)
            if result.output:
                print(result.output.rstrip("\n"))
            return 0

        agent.api_key = resolve_api_key(args)
        answer = agent.process_message(line)
        print(answer)
        return 0
    finally:
        agent.close()


if __name__ == "__main__":
    main()
