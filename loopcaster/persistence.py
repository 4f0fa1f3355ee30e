"""
Session persistence: remembers the rotation position and the auto-restart
switch so a restarted service resumes on the same endpoint/profile/source.
"""

import json
import logging
import os
import shutil
import time

logger = logging.getLogger(__name__)


def save_session_state(path, indices, auto_restart):
    """Save the session's rotation indices to persistent storage"""
    state = {
        'indices': dict(indices),
        'auto_restart': bool(auto_restart),
        'saved_at': time.time(),
    }
    try:
        # Create backup of current file if it exists
        if os.path.exists(path):
            shutil.copy2(path, f"{path}.backup")

        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w') as f:
            json.dump(state, f, indent=2)
        logger.debug(f"Saved session state to {path}")
        return True
    except (OSError, TypeError) as e:
        logger.error(f"Failed to save session state to {path}: {e}")
        return False


def load_session_state(path):
    """Load the persisted session state, falling back to the backup file"""
    for candidate in (path, f"{path}.backup"):
        if not os.path.exists(candidate):
            continue
        try:
            with open(candidate, 'r') as f:
                state = json.load(f)
            if isinstance(state, dict) and isinstance(state.get('indices'), dict):
                if candidate != path:
                    logger.info(f"Loaded session state from backup file {candidate}")
                return state
            logger.warning(f"Ignoring malformed session state in {candidate}")
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load session state from {candidate}: {e}")
    return {}


def clear_session_state(path):
    for candidate in (path, f"{path}.backup"):
        try:
            if os.path.exists(candidate):
                os.remove(candidate)
        except OSError as e:
            logger.error(f"Failed to remove {candidate}: {e}")
