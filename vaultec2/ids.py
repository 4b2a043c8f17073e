"""
Run ID and workspace name utilities.
"""

import random
import re
import string
import uuid
from datetime import datetime

WORKSPACE_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def new_run_id() -> str:
    """
    Generate a new run ID in format: r-YYYYMMDD-hhmmss-XXXX

    Returns:
        str: Unique run ID
    """
    now = datetime.now()
    date_str = now.strftime("%Y%m%d")
    time_str = now.strftime("%H%M%S")

    # Generate 4 random alphanumeric characters
    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))

    return f"r-{date_str}-{time_str}-{random_suffix}"


def is_valid_workspace(name: str) -> bool:
    return bool(WORKSPACE_PATTERN.match(name or ""))


def new_lineage() -> str:
    return str(uuid.uuid4())
