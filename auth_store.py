import logging
import os
import shutil
from typing import List

AUTH_DIR_PREFIX = "auth_info_"


class AuthStore:
    """
    Owns the on-disk auth material of each session: one ``auth_info_<id>``
    directory per session under ``root``. The transport reads and writes the
    contents; the gateway only discovers and erases whole directories.
    """

    def __init__(self, root: str) -> None:
        self.root = root

    def path_for(self, session_id: str) -> str:
        return os.path.join(self.root, f"{AUTH_DIR_PREFIX}{session_id}")

    def exists(self, session_id: str) -> bool:
        return os.path.isdir(self.path_for(session_id))

    def discover(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        ids = []
        for entry in sorted(os.listdir(self.root)):
            if not entry.startswith(AUTH_DIR_PREFIX):
                continue
            if not os.path.isdir(os.path.join(self.root, entry)):
                continue
            session_id = entry[len(AUTH_DIR_PREFIX):]
            if session_id:
                ids.append(session_id)
        logging.info("Found %d existing sessions: %s", len(ids), ids)
        return ids

    def erase(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path, ignore_errors=True)
        logging.info("Deleted auth folder: %s", path)
        return True
