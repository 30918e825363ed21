"""
ツールレジストリ

モデルからの関数呼び出し（ツールコール）をローカルのハンドラーに対応付けます。
各ツールの引数はPydanticモデルで宣言し、そのJSONスキーマをそのまま
session.update の parameters として公開するため、スキーマとハンドラーの
食い違いは発生しません。

ハンドラーは例外を外に出さず、失敗はすべて ToolResult の出力テキストに
変換されます（モデルが会話の中で再試行できるように）。

ツール一覧:
    - executeCommand: シェルコマンドを実行（終了コードと出力を返す）
    - editPrompt: 現在のプロンプトを置き換える
    - sendPrompt: 現在のプロンプトをエージェントに送信してクリア
    - stopTask: 現在のタスクを破棄
    - stopListening: マイク送信を停止
"""

import asyncio
import json
import logging
import os
import shlex
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config_models import ToolsConfig
from .errors import ToolArgumentError, ToolExecutionError
from .events import ConversationItemCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCall:
    """保留中のツール呼び出し"""
    call_id: str
    name: str
    arguments: Dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    """ツール呼び出しの結果（call_id は元の ToolCall と一致する）"""
    call_id: str
    output: str
    is_error: bool = False

    @classmethod
    def error(cls, call_id: str, message: str) -> "ToolResult":
        return cls(call_id=call_id, output=f"error: {message}", is_error=True)

    def to_envelope(self) -> ConversationItemCreate:
        return ConversationItemCreate.function_call_output(self.call_id, self.output)


@dataclass
class ToolContext:
    """
    ハンドラーが操作できるセッション側の状態

    ハンドラーはイベントループ上で実行されるため、ここへの書き込みは
    セッションの他の状態更新と直列化されます。
    """
    prompt: str = ""
    agent: Optional["AgentChannel"] = None
    set_listening: Callable[[bool], None] = field(default=lambda enabled: None)


def parse_tool_arguments(blob: Any) -> Dict[str, Any]:
    """
    ツールコールの引数文字列（JSONエンコードされたオブジェクト）をデコード

    Args:
        blob: item.arguments の文字列。空の場合は引数なしとみなす

    Returns:
        引数名 -> 値 の辞書

    Raises:
        ToolArgumentError: 文字列でない、JSONとして不正、またはオブジェクトでない場合
    """
    if blob is None:
        return {}
    if not isinstance(blob, str):
        raise ToolArgumentError(f"arguments must be a JSON-encoded string, got {type(blob).__name__}")
    if not blob.strip():
        return {}
    try:
        decoded = json.loads(blob)
    except ValueError as e:
        raise ToolArgumentError(f"arguments are not valid JSON ({e})") from e
    if not isinstance(decoded, dict):
        raise ToolArgumentError(f"arguments must be a JSON object, got {type(decoded).__name__}")
    return decoded


def build_env(extra_path: List[str]) -> Dict[str, str]:
    """PATHにローカルのインストール先を追加した環境変数を生成"""
    env = dict(os.environ)
    path = env.get("PATH", "").split(os.pathsep) if env.get("PATH") else []
    for directory in extra_path:
        directory = os.path.expanduser(directory)
        if directory not in path:
            path.append(directory)
    env["PATH"] = os.pathsep.join(path)
    return env


def _strip_titles(schema: Dict[str, Any]) -> Dict[str, Any]:
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    return schema


class AgentChannel:
    """
    コーディング/ブラウザエージェントへの送信チャネル

    常駐サブプロセスの標準入力にプロンプトを書き込みます。
    プロセスは初回送信時に起動し、終了していた場合は次の送信時に再起動します。
    1回の送信につき1回だけ書き込み、再試行はしません。
    """

    def __init__(self, command: str, env: Optional[Dict[str, str]] = None):
        self.command = command
        self.env = env
        self.process = None
        self._lock = threading.Lock()

    def _ensure_process(self):
        if self.process is not None and self.process.poll() is None:
            return
        try:
            self.process = subprocess.Popen(
                shlex.split(self.command),
                stdin=subprocess.PIPE,
                text=True,
                env=self.env,
            )
            logger.info(f"Agent process started: {self.command} (pid={self.process.pid})")
        except (OSError, ValueError) as e:
            raise ToolExecutionError(f"failed to start agent '{self.command}': {e}") from e

    def send(self, text: str):
        """
        テキストをエージェントに送信（ブロッキング）

        Raises:
            ToolExecutionError: プロセス起動失敗、またはパイプへの書き込み失敗
        """
        with self._lock:
            self._ensure_process()
            try:
                self.process.stdin.write(text + "\n")
                self.process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise ToolExecutionError(f"agent did not accept the prompt: {e}") from e

    def close(self):
        """エージェントプロセスを終了"""
        with self._lock:
            if self.process is None or self.process.poll() is not None:
                return
            try:
                self.process.stdin.close()
                self.process.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired):
                self.process.terminate()
                self.process.wait()
            logger.info("Agent process stopped")


class Tool:
    """
    ツールの基底クラス

    サブクラスは name / description / args_model を定義し、run() を実装します。
    """
    name: str = ""
    description: str = ""
    args_model = BaseModel

    def schema(self) -> Dict[str, Any]:
        """session.update の tools[] に載せる関数定義"""
        parameters = _strip_titles(self.args_model.model_json_schema())
        parameters.setdefault("properties", {})
        parameters.setdefault("required", [])
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": parameters,
        }

    def validate(self, arguments: Dict[str, Any]) -> BaseModel:
        try:
            return self.args_model.model_validate(arguments)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolArgumentError(f"invalid arguments for {self.name}: {problems}") from e

    async def run(self, args: BaseModel, context: ToolContext) -> str:
        raise NotImplementedError


class ExecuteCommandArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: str = Field(..., description="The shell command to run.")


class ExecuteCommandTool(Tool):
    """シェルコマンドを実行し、終了コードと標準出力+標準エラーを返す"""
    name = "executeCommand"
    description = "Run a shell command on the user's computer and return its exit code and output."
    args_model = ExecuteCommandArgs

    def __init__(self, shell: str = "/bin/sh", extra_path: Optional[List[str]] = None,
                 timeout: Optional[float] = None):
        self.shell = shell
        self.timeout = timeout
        self.env = build_env(extra_path or [])

    def execute(self, command: str) -> str:
        """
        コマンドを同期実行（ブロッキング）

        プロセスの終了を待つため、孤児プロセスは残りません。
        タイムアウト時はプロセスグループごと kill します。
        """
        try:
            process = subprocess.Popen(
                command,
                shell=True,
                executable=self.shell,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolExecutionError(f"failed to start command: {e}") from e

        with process:
            try:
                output, _ = process.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                process.communicate()
                raise ToolExecutionError(f"command timed out after {self.timeout}s") from e
        return f"exit code: {process.returncode}\noutput: {output or ''}"

    async def run(self, args: ExecuteCommandArgs, context: ToolContext) -> str:
        logger.info(f"Executing command: {args.command}")
        loop = asyncio.get_running_loop()
        # 受信ループを止めないようスレッドで待つ
        return await loop.run_in_executor(None, self.execute, args.command)


class EditPromptArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(..., description="The complete new prompt text.")


class EditPromptTool(Tool):
    name = "editPrompt"
    description = "Replace the prompt that will be sent to the coding agent."
    args_model = EditPromptArgs

    async def run(self, args: EditPromptArgs, context: ToolContext) -> str:
        context.prompt = args.prompt
        return "Prompt updated successfully"


class NoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SendPromptTool(Tool):
    """現在のプロンプトをエージェントに送信する（空ならエラー、副作用なし）"""
    name = "sendPrompt"
    description = "Send the current prompt to the coding agent and clear it."
    args_model = NoArgs

    async def run(self, args: NoArgs, context: ToolContext) -> str:
        text = context.prompt
        if not text.strip():
            raise ToolExecutionError("the current prompt is empty, use editPrompt first")
        if context.agent is None:
            raise ToolExecutionError("no agent is configured to receive prompts")

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, context.agent.send, text)
        context.prompt = ""
        return "Prompt sent to agent"


class StopTaskTool(Tool):
    name = "stopTask"
    description = "Abandon the current task and discard the prompt being edited."
    args_model = NoArgs

    async def run(self, args: NoArgs, context: ToolContext) -> str:
        context.prompt = ""
        return "Task stopped"


class StopListeningTool(Tool):
    name = "stopListening"
    description = "Stop streaming the microphone until the user resumes listening."
    args_model = NoArgs

    async def run(self, args: NoArgs, context: ToolContext) -> str:
        context.set_listening(False)
        return "Stopped listening"


class ToolRegistry:
    """
    ツール名 -> ハンドラーの対応表

    claim() で call_id ごとに一度だけ実行権を与え、同じ呼び出しが
    プロトコル上重複して届いても結果は一度しか返しません。
    記録する call_id は直近 max_claims 件までです。
    """

    def __init__(self, tools: Optional[List[Tool]] = None, max_claims: int = 1024):
        self._tools: Dict[str, Tool] = {}
        self._claimed = set()
        self._claim_order = deque()
        self.max_claims = max_claims
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool):
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def claim(self, call_id: str) -> bool:
        """
        call_id の実行権を取得

        Returns:
            True: 初回, False: 既に処理済み（重複）
        """
        if call_id in self._claimed:
            return False
        self._claimed.add(call_id)
        self._claim_order.append(call_id)
        if len(self._claim_order) > self.max_claims:
            self._claimed.discard(self._claim_order.popleft())
        return True

    def is_claimed(self, call_id: str) -> bool:
        return call_id in self._claimed

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolResult:
        """
        ツールを実行して結果を返す（例外は送出しない）

        Args:
            call: ツール呼び出し
            context: セッション側の状態

        Returns:
            ToolResult
        """
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {call.name} (call_id={call.call_id})")
            return ToolResult.error(call.call_id, f"unknown tool '{call.name}'")

        try:
            args = tool.validate(call.arguments)
            output = await tool.run(args, context)
        except (ToolArgumentError, ToolExecutionError) as e:
            logger.warning(f"Tool {call.name} failed (call_id={call.call_id}): {e}")
            return ToolResult.error(call.call_id, str(e))
        except Exception as e:
            logger.error(f"Unexpected error in tool {call.name} (call_id={call.call_id}): {e}", exc_info=True)
            return ToolResult.error(call.call_id, f"{type(e).__name__}: {e}")

        logger.info(f"Tool {call.name} completed (call_id={call.call_id})")
        return ToolResult(call_id=call.call_id, output=output)


def build_default_registry(tools_config: Optional[ToolsConfig] = None) -> ToolRegistry:
    """設定から標準ツール一式を登録したレジストリを生成"""
    tools_config = tools_config or ToolsConfig()
    return ToolRegistry([
        ExecuteCommandTool(
            shell=tools_config.shell,
            extra_path=tools_config.extra_path,
            timeout=tools_config.command_timeout,
        ),
        EditPromptTool(),
        SendPromptTool(),
        StopTaskTool(),
        StopListeningTool(),
    ])
