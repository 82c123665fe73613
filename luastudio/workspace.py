"""In-memory project tree for the editor, backed by a PyFilesystem2 MemoryFS.

Node ids are absolute workspace paths ('/src/main.lua'); the project root is
'/'. Nothing is written to disk.

Example usage:
    workspace = Workspace.scaffold()
    source = workspace.read('/src/main.lua')
    new_id = workspace.create_file('/src', 'game.lua')
    workspace.update_content(new_id, 'print("hi")')
    tree = workspace.tree()    # FileNode with nested children
"""

from enum import Enum
from typing import List, Optional

from fs import path as fspath
from fs.errors import ResourceNotFound
from fs.memoryfs import MemoryFS
from pydantic import BaseModel, Field

ROOT_ID = '/'
NEW_FILE_CONTENT = '-- Start coding here...'


class WorkspaceError(LookupError):
    """Raised for missing nodes, invalid names and type mismatches."""


class NodeType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class FileNode(BaseModel):
    """Snapshot of one node of the project tree."""
    id: str = Field(..., description="Absolute workspace path")
    name: str
    type: NodeType
    content: Optional[str] = Field(default=None, description="File text (files only)")
    children: Optional[List['FileNode']] = Field(default=None, description="Child nodes (folders only)")
    is_open: bool = Field(default=False, description="Folder expanded in the explorer")


MAIN_LUA = '''local math = require("math")

-- Main calculation module
local function calculate_sum(a, b)
  return a + b
end

local x = 10
local y = 20

print("Starting summation script...")
local result = calculate_sum(x, y)
print("Result: " .. result)

-- Validation block
if result > 25 then
  print("Condition met: Value exceeds 25")
end'''

UTILS_LUA = '''-- Utility functions
local function greet(name)
  print("Hello, " .. name)
end

return { greet = greet }'''

CONFIG_JSON = '''{
  "version": "1.0.0",
  "debug": true
}'''


class Workspace:
    """Project files held in memory."""

    def __init__(self, name: str = 'PROJECT-LUA'):
        self.name = name
        self._fs = MemoryFS()
        self._open_folders = {ROOT_ID}

    @classmethod
    def scaffold(cls, name: str = 'PROJECT-LUA') -> 'Workspace':
        """Workspace seeded with the starter project."""
        workspace = cls(name)
        workspace.create_folder(ROOT_ID, 'src')
        workspace.create_file('/src', 'main.lua', MAIN_LUA)
        workspace.create_file('/src', 'utils.lua', UTILS_LUA)
        workspace.create_file(ROOT_ID, 'config.json', CONFIG_JSON)
        return workspace

    @property
    def fs(self) -> MemoryFS:
        """The underlying MemoryFS for direct operations."""
        return self._fs

    def close(self) -> None:
        self._fs.close()

    # =========================================================================
    # Queries
    # =========================================================================

    def exists(self, node_id: str) -> bool:
        return self._fs.exists(node_id)

    def is_file(self, node_id: str) -> bool:
        try:
            return self._fs.isfile(node_id)
        except ResourceNotFound:
            return False

    def is_folder(self, node_id: str) -> bool:
        try:
            return self._fs.isdir(node_id)
        except ResourceNotFound:
            return False

    def _children(self, folder_id: str) -> List[str]:
        # Folders first, then files, each alphabetical
        names = self._fs.listdir(folder_id)
        ids = [fspath.join(folder_id, name) for name in names]
        return sorted(ids, key=lambda i: (not self._fs.isdir(i), fspath.basename(i).lower()))

    def find(self, node_id: str) -> Optional[FileNode]:
        """Snapshot of a node (recursively for folders), or None."""
        if not self._fs.exists(node_id):
            return None
        node_id = fspath.abspath(fspath.normpath(node_id))
        if self._fs.isdir(node_id):
            return FileNode(
                id=node_id,
                name=self.name if node_id == ROOT_ID else fspath.basename(node_id),
                type=NodeType.FOLDER,
                children=[self.find(child) for child in self._children(node_id)],
                is_open=node_id in self._open_folders,
            )
        return FileNode(
            id=node_id,
            name=fspath.basename(node_id),
            type=NodeType.FILE,
            content=self._fs.readtext(node_id),
        )

    def tree(self) -> FileNode:
        """The whole project as a FileNode rooted at '/'."""
        return self.find(ROOT_ID)

    def read(self, node_id: str) -> str:
        if not self.is_file(node_id):
            raise WorkspaceError(f"No such file: {node_id}")
        return self._fs.readtext(node_id)

    def files(self) -> List[str]:
        """Ids of every file, depth-first."""
        return [fspath.abspath(p) for p in self._fs.walk.files(ROOT_ID)]

    # =========================================================================
    # Mutations
    # =========================================================================

    def _child_id(self, parent_id: str, name: str) -> str:
        name = name.strip()
        if not name or '/' in name or name in ('.', '..'):
            raise WorkspaceError(f"Invalid name: {name!r}")
        if not self.is_folder(parent_id):
            raise WorkspaceError(f"No such folder: {parent_id}")
        child_id = fspath.join(fspath.abspath(parent_id), name)
        if self._fs.exists(child_id):
            raise WorkspaceError(f"Already exists: {child_id}")
        return child_id

    def create_file(self, parent_id: str, name: str, content: str = NEW_FILE_CONTENT) -> str:
        """Create a file under parent_id and expand the parent. Returns its id."""
        file_id = self._child_id(parent_id, name)
        self._fs.writetext(file_id, content)
        self._open_folders.add(fspath.abspath(parent_id))
        return file_id

    def create_folder(self, parent_id: str, name: str) -> str:
        folder_id = self._child_id(parent_id, name)
        self._fs.makedir(folder_id)
        self._open_folders.add(folder_id)
        return folder_id

    def update_content(self, file_id: str, content: str) -> None:
        if not self.is_file(file_id):
            raise WorkspaceError(f"No such file: {file_id}")
        self._fs.writetext(file_id, content)

    def toggle_folder(self, folder_id: str) -> bool:
        """Flip a folder's expanded state. Returns the new state."""
        if not self.is_folder(folder_id):
            raise WorkspaceError(f"No such folder: {folder_id}")
        folder_id = fspath.abspath(fspath.normpath(folder_id))
        if folder_id in self._open_folders:
            self._open_folders.discard(folder_id)
            return False
        self._open_folders.add(folder_id)
        return True


FileNode.model_rebuild()
