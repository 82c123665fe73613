"""
Editor host state: open tabs, the terminal pane and the Run button.

None of this is part of the sandbox. It supplies source text to a LuaRunner
and records the messages that come back.

Usage:
    workspace = Workspace.scaffold()
    editor = EditorState(workspace)
    editor.select('/src/main.lua')

    terminal = Terminal()
    controller = RunController(LuaRunner(), editor, terminal)
    controller.run_active()
    for message in terminal.messages:
        print(message.kind.value, message.text)
"""

from typing import Callable, List, Optional

from luastudio.logging import get_logger
from luastudio.lua.runner import LuaRunner
from luastudio.messages import MessageKind, OutputMessage, RunResult
from luastudio.workspace import FileNode, NodeType, Workspace, WorkspaceError

log = get_logger('editor')


class EditorState:
    """Tabs and the active file."""

    def __init__(self, workspace: Workspace):
        self.workspace = workspace
        self.open_ids: List[str] = []
        self.active_id: Optional[str] = None

    @property
    def active_file(self) -> Optional[FileNode]:
        if self.active_id is None:
            return None
        return self.workspace.find(self.active_id)

    def select(self, file_id: str) -> None:
        """Activate a file, opening a tab for it if needed."""
        if not self.workspace.is_file(file_id):
            raise WorkspaceError(f"No such file: {file_id}")
        self.active_id = file_id
        if file_id not in self.open_ids:
            self.open_ids.append(file_id)

    def activate(self, file_id: str) -> None:
        """Switch to an already open tab."""
        if file_id not in self.open_ids:
            raise WorkspaceError(f"Tab not open: {file_id}")
        self.active_id = file_id

    def close_tab(self, file_id: str) -> None:
        """Close a tab. Closing the active tab activates the last one left."""
        self.open_ids = [oid for oid in self.open_ids if oid != file_id]
        if not self.open_ids:
            self.active_id = None
        elif self.active_id == file_id:
            self.active_id = self.open_ids[-1]

    def edit(self, content: str) -> None:
        """Replace the active file's content."""
        if self.active_id is None:
            raise WorkspaceError("No active file")
        self.workspace.update_content(self.active_id, content)


class Terminal:
    """
    The terminal pane's message list.

    on_output/on_error match LuaRunner.run()'s callbacks. An optional echo
    callable sees every message as it is added (the CLI prints them).
    """

    def __init__(self, echo: Optional[Callable[[OutputMessage], None]] = None):
        self.messages: List[OutputMessage] = []
        self._echo = echo

    def add(self, text: str, kind: MessageKind = MessageKind.INFO) -> OutputMessage:
        message = OutputMessage(text=text, kind=kind)
        self.messages.append(message)
        if self._echo is not None:
            self._echo(message)
        return message

    def on_output(self, text: str, kind: MessageKind) -> None:
        self.add(text, kind)

    def on_error(self, text: str) -> None:
        self.add(text, MessageKind.ERROR)

    def clear(self) -> None:
        self.messages.clear()

    def texts(self, kind: Optional[MessageKind] = None) -> List[str]:
        return [m.text for m in self.messages if kind is None or m.kind == kind]


class RunController:
    """The Run button: runs the active file and reports into the terminal."""

    def __init__(self, runner: LuaRunner, editor: EditorState, terminal: Terminal):
        self.runner = runner
        self.editor = editor
        self.terminal = terminal
        self.is_running = False

    def run_active(self) -> Optional[RunResult]:
        """Run the active file. Returns None if there was nothing to run."""
        node = self.editor.active_file
        if node is None or node.type is not NodeType.FILE:
            self.terminal.add("No file selected or invalid file.", MessageKind.ERROR)
            return None

        self.is_running = True
        self.terminal.add(f"lua {node.name}", MessageKind.INPUT)
        try:
            result = self.runner.run(
                node.content or '',
                self.terminal.on_output,
                self.terminal.on_error,
                chunk_name=node.name,
            )
        finally:
            self.is_running = False

        if result.succeeded:
            self.terminal.add(f"Finished in {result.duration:.2f}s", MessageKind.SUCCESS)
        log.debug("%s -> %s", node.id, result.outcome.value)
        return result
