"""
Shared file browser for the compromised system desktop.

The directory tree is static. What players share is the browser's view
state at lobbies/{code}/fileExplorer:

    {currentPath, selectedItem, showFileContent, currentFile,
     lastUpdated, prerequisites: {<name>: true}}

Nothing can be browsed until the firewall is down (desktopState
fileExplorerUnlocked). Anyone may highlight an item. Only the leader may
open files, change directory or close the file viewer; everyone else
mirrors the result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.core.lobby import lobby_path, player_path
from app.core.store import SERVER_TIMESTAMP, SharedStore

logger = logging.getLogger(__name__)

ROOT = "/"

FOLDER = "folder"
FILE = "file"
EXECUTABLE = "executable"

ADMIN_LEGACY = "admin_legacy"


@dataclass(frozen=True)
class FileNode:
    """Entry in the directory tree."""
    name: str
    type: str
    path: str
    locked: bool = False
    requires: Optional[str] = None
    status: Optional[str] = None
    hint: Optional[str] = None
    key: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {"name": self.name, "type": self.type, "path": self.path}
        if self.locked:
            data["locked"] = True
        if self.requires:
            data["requires"] = self.requires
        if self.status:
            data["status"] = self.status
        if self.hint:
            data["hint"] = self.hint
        if self.key:
            data["key"] = True
        return data


FILE_SYSTEM: Dict[str, List[FileNode]] = {
    "/": [
        FileNode("Core", FOLDER, "/Core"),
        FileNode("Users", FOLDER, "/Users"),
        FileNode("Documents", FOLDER, "/Documents"),
    ],
    "/Core": [
        FileNode("BombControl", FOLDER, "/Core/BombControl"),
        FileNode("ControlPanel", FOLDER, "/Core/ControlPanel", locked=True, requires=ADMIN_LEGACY),
        FileNode("SystemLogs", FOLDER, "/Core/SystemLogs"),
    ],
    "/Core/BombControl": [
        FileNode("arm.exe", EXECUTABLE, "/Core/BombControl/arm.exe"),
        FileNode("status.log", FILE, "/Core/BombControl/status.log"),
        FileNode("disarm.key", FILE, "/Core/BombControl/disarm.key", locked=True, requires=ADMIN_LEGACY),
    ],
    "/Core/SystemLogs": [
        FileNode("legacy_user_error.log", FILE, "/Core/SystemLogs/legacy_user_error.log"),
    ],
    "/Users": [
        FileNode("Admins", FOLDER, "/Users/Admins"),
        FileNode("Employees", FOLDER, "/Users/Employees"),
    ],
    "/Users/Admins": [
        FileNode("admin_legacy", FOLDER, "/Users/Admins/admin_legacy",
                 locked=True, requires=ADMIN_LEGACY, status="disabled"),
        FileNode("sys_admin", FOLDER, "/Users/Admins/sys_admin"),
    ],
    "/Users/Employees": [
        FileNode("onboarding.csv", FILE, "/Users/Employees/onboarding.csv",
                 key=True, hint="Employee records"),
    ],
    "/Documents": [
        FileNode("SecurityProtocols", FOLDER, "/Documents/SecurityProtocols"),
    ],
    "/Documents/SecurityProtocols": [
        FileNode("level3_access.txt", FILE, "/Documents/SecurityProtocols/level3_access.txt",
                 hint="admin_legacy recovery"),
    ],
}

# Recovery credential for each prerequisite, format [firstname].[year_of_joining]
PREREQUISITE_CREDENTIALS = {
    ADMIN_LEGACY: "adam.2004",
}

LOCKED_FILE_CONTENT = """
[THIS FILE IS LOCKED]

Requires {requires} credentials to access.
Attempt to force access will trigger security alarm.
"""

FILE_CONTENTS = {
    "/Core/BombControl/status.log": """
=== BOMB STATUS LOG ===
Last updated: {now}

SYSTEM: ARMED
SECURITY LEVEL: MAXIMUM
COUNTDOWN: ACTIVE
DISARM ATTEMPTS: 0
REMOTE ACCESS: DISABLED

WARNING: Unauthorized access detected
ACTION REQUIRED: Immediate disarm procedure
AUTHENTICATION: Level 3 Admin Access Required

NOTICE: Disarm key file is locked. Use admin_legacy credentials to unlock.
""",
    "/Core/SystemLogs/legacy_user_error.log": """
=== SYSTEM ERROR LOG ===
Error Code: AUTH_573
Timestamp: {today}
Severity: CRITICAL

User 'admin_legacy' account has been locked due to suspicious activity.
Attempted access from unauthorized IP: 192.168.1.254

Security protocol triggered:
- Account disabled
- Files locked
- Audit log created

Note from Security Team:
The legacy admin credentials have been compromised.
For recovery, use the format: [firstname].[year_of_joining]
Search the onboarding files for this information.

Supervisor signature: D. Cooper
""",
    "/Users/Employees/onboarding.csv": """
Date,Employee ID,Last Name,First Name,Position,Year Joined,Department,Status
2018-06-12,EMP0045,Johnson,Emily,Software Engineer,2018,Engineering,Active
2004-02-15,EMP0023,Miller,Alexander,Network Administrator,2004,IT,Inactive
2020-01-30,EMP0067,Williams,Sophia,UX Designer,2020,Design,Active
2017-11-05,EMP0056,Brown,James,Data Analyst,2017,Analytics,Active
2015-08-20,EMP0034,Jones,Olivia,Project Manager,2015,Management,Active
2010-03-10,EMP0028,Davis,Daniel,Systems Engineer,2010,Engineering,Terminated
2004-03-01,EMP0024,Cohen,David,System Admin,2004,IT,Terminated
2019-09-25,EMP0061,Wilson,Emma,Marketing Specialist,2019,Marketing,Active
2004-05-17,EMP0025,Taylor,Mia,Security Specialist,2004,IT,Inactive
2022-02-01,EMP0075,Smith,Liam,Frontend Developer,2022,Engineering,Active
2004-11-30,EMP0026,Legacy,Adam,IT Admin,2004,IT,Inactive
2014-07-15,EMP0033,Anderson,Isabella,HR Manager,2014,HR,Active
""",
    "/Documents/SecurityProtocols/level3_access.txt": """
=== LEVEL 3 ACCESS RECOVERY PROTOCOL ===

For security reasons, admin_legacy account has been locked.

To restore access, you will need:
1. The admin's first name
2. The year they joined TOMAX

Access recovery format: [firstname].[year_of_joining]

Example: if John Doe joined in 2010, recovery would be: john.2010

IMPORTANT: Case sensitive! Use lowercase for the name.

Note: You can find onboarding records in the Employees directory.
""",
    "/Core/BombControl/disarm.key": """
=== DISARM AUTHORIZATION KEY ===
AUTHORIZATION: GRANTED
CODE: 7B-32F-9E1-A45-C08

DISARM PROCEDURE:
1. Access Control Panel with admin_legacy
2. Enter authorization key when prompted
3. Confirm disarm command with biometric scan
4. Wait for system acknowledgment

WARNING: Do not share this key. Any unauthorized
access will be reported to security.
""",
}

_NODES: Dict[str, FileNode] = {
    node.path: node
    for children in FILE_SYSTEM.values()
    for node in children
}


def normalize_path(path: Optional[str]) -> str:
    """Collapse a browser path to "/" or "/A/B" form."""
    parts = [p for p in (path or "").split("/") if p]
    return "/" + "/".join(parts) if parts else ROOT


def get_node(path: str) -> Optional[FileNode]:
    return _NODES.get(normalize_path(path))


def list_dir(path: str) -> List[FileNode]:
    """Children of a folder (empty for unknown paths and files)."""
    return list(FILE_SYSTEM.get(normalize_path(path), []))


def parent_of(path: str) -> str:
    """
    Parent folder of a path.

    Example: "/Core/BombControl" -> "/Core", "/Core" -> "/"
    """
    parts = [p for p in normalize_path(path).split("/") if p]
    if len(parts) <= 1:
        return ROOT
    return "/" + "/".join(parts[:-1])


def breadcrumbs(path: str) -> List[Dict[str, str]]:
    """
    Breadcrumb trail from the root to path.

    Example: "/Core/SystemLogs" ->
        [{"name": "Root", "path": "/"}, {"name": "Core", "path": "/Core"},
         {"name": "SystemLogs", "path": "/Core/SystemLogs"}]
    """
    crumbs = [{"name": "Root", "path": ROOT}]
    current = ""
    for part in [p for p in normalize_path(path).split("/") if p]:
        current += f"/{part}"
        crumbs.append({"name": part, "path": current})
    return crumbs


def is_unlocked(node: FileNode, prerequisites: Optional[Dict[str, Any]]) -> bool:
    """True if the node is not locked or its prerequisite has been met."""
    if not node.locked:
        return True
    return bool(node.requires and (prerequisites or {}).get(node.requires))


def file_content(node: FileNode, prerequisites: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> str:
    """Text shown in the file viewer for a file node."""
    if not is_unlocked(node, prerequisites):
        return LOCKED_FILE_CONTENT.format(requires=node.requires or "administrator")
    template = FILE_CONTENTS.get(node.path)
    if template is None:
        return "No content available for this file."
    now = now or datetime.now(timezone.utc)
    return template.format(now=now.isoformat(), today=now.date().isoformat())


class FileExplorerController:
    """Mutates the shared file browser view of one lobby."""

    def __init__(self, store: SharedStore, room_code: str):
        self._store = store
        self.room_code = room_code

    @property
    def path(self) -> str:
        return lobby_path(self.room_code, "fileExplorer")

    async def get_state(self) -> Dict[str, Any]:
        """Browser state with defaults filled in."""
        data = await self._store.get(self.path) or {}
        current_path = normalize_path(data.get("currentPath"))
        prerequisites = data.get("prerequisites") or {}
        return {
            "currentPath": current_path,
            "selectedItem": data.get("selectedItem"),
            "showFileContent": bool(data.get("showFileContent")),
            "currentFile": data.get("currentFile"),
            "lastUpdated": data.get("lastUpdated"),
            "prerequisites": prerequisites,
            "items": [
                {**node.to_dict(), "unlocked": is_unlocked(node, prerequisites)}
                for node in list_dir(current_path)
            ],
            "breadcrumbs": breadcrumbs(current_path),
        }

    async def _is_leader(self, player_id: Optional[str]) -> bool:
        if not player_id:
            return False
        return bool(await self._store.get(player_path(self.room_code, player_id, "isLeader")))

    async def is_available(self) -> bool:
        """Whether the firewall is down and the explorer can be used."""
        return bool(await self._store.get(lobby_path(self.room_code, "desktopState", "fileExplorerUnlocked")))

    async def _can_browse(self, player_id: Optional[str], action: str) -> bool:
        if not await self._is_leader(player_id):
            logger.debug(f"Non-leader {player_id} tried to {action} in lobby {self.room_code}")
            return False
        if not await self.is_available():
            logger.debug(f"File explorer still firewalled in lobby {self.room_code}")
            return False
        return True

    async def _write(self, values: Dict[str, Any]) -> None:
        values["lastUpdated"] = SERVER_TIMESTAMP
        await self._store.update(self.path, values)

    async def select(self, player_id: str, item_path: Optional[str]) -> Optional[str]:
        """
        Highlight an item (any player). Selecting the highlighted item again
        clears the selection.

        Returns:
            The selected path after the call
        """
        state = await self.get_state()
        if not await self.is_available():
            return state["selectedItem"]
        item_path = normalize_path(item_path) if item_path else None
        if item_path is not None and item_path not in _NODES:
            return state["selectedItem"]

        selected = None if item_path == state["selectedItem"] else item_path
        await self._write({"selectedItem": selected})
        return selected

    async def navigate(self, player_id: str, folder_path: str) -> bool:
        """
        Change directory (leader only).

        Returns:
            True if the current path changed
        """
        if not await self._can_browse(player_id, "navigate"):
            return False

        folder_path = normalize_path(folder_path)
        if folder_path != ROOT:
            node = _NODES.get(folder_path)
            if node is None or node.type != FOLDER:
                return False
            state = await self.get_state()
            if not is_unlocked(node, state["prerequisites"]):
                logger.debug(f"Folder {folder_path} is locked in lobby {self.room_code}")
                return False

        await self._write({"currentPath": folder_path, "selectedItem": None})
        return True

    async def open(self, player_id: str, item_path: str) -> bool:
        """
        Open an item (leader only): folders are entered, files are shown.

        Locked files open to a locked notice; locked folders stay closed.
        """
        if not await self._can_browse(player_id, f"open {item_path}"):
            return False

        node = get_node(item_path)
        if node is None:
            return False
        if node.type == FOLDER:
            return await self.navigate(player_id, node.path)

        state = await self.get_state()
        current_file = node.to_dict()
        current_file["content"] = file_content(node, state["prerequisites"])
        await self._write({"currentFile": current_file, "showFileContent": True})
        logger.info(f"Leader {player_id} opened {node.path} in lobby {self.room_code}")
        return True

    async def back(self, player_id: str) -> bool:
        """Go to the parent folder (leader only)."""
        state = await self.get_state()
        if state["currentPath"] == ROOT:
            return False
        return await self.navigate(player_id, parent_of(state["currentPath"]))

    async def close_file(self, player_id: str) -> bool:
        """Close the file viewer (leader only)."""
        if not await self._can_browse(player_id, "close a file"):
            return False
        await self._write({"showFileContent": False})
        return True

    async def unlock_prerequisite(self, player_id: str, name: str, credential: str) -> bool:
        """
        Enter a recovery credential (leader only).

        Args:
            player_id: Caller (must be the leader)
            name: Prerequisite name, e.g. "admin_legacy"
            credential: Recovery credential, compared case-sensitively

        Returns:
            True if the prerequisite is now unlocked
        """
        if not await self._can_browse(player_id, f"unlock {name}"):
            return False

        expected = PREREQUISITE_CREDENTIALS.get(name)
        if expected is None or credential != expected:
            logger.info(f"Wrong recovery credential for {name} in lobby {self.room_code}")
            return False

        await self._write({f"prerequisites/{name}": True})
        logger.info(f"Prerequisite {name} unlocked in lobby {self.room_code}")
        return True
