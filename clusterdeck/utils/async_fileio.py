"""
Async file I/O utilities
Wraps blocking file operations to prevent blocking the event loop.
"""
import asyncio
import json
import os
import shutil
from typing import Any, Optional

import aiofiles


async def read_json_async(file_path: str) -> Optional[Any]:
    """
    Read and parse a JSON file.

    Args:
        file_path: Path to file

    Returns:
        Parsed content, or None if the file does not exist
    """
    try:
        async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
            content = await f.read()
    except FileNotFoundError:
        return None
    return json.loads(content)


async def rmtree_async(path: str) -> None:
    """
    Async recursive delete; a missing directory is not an error.

    Args:
        path: Directory path to remove
    """
    def _rmtree():
        if not os.path.lexists(path):
            return
        shutil.rmtree(path)

    await asyncio.to_thread(_rmtree)


async def symlink_if_missing_async(target: str, link: str) -> bool:
    """
    Create link -> target when the target exists and the link does not.

    Returns:
        True if a link was created
    """
    def _symlink():
        if os.path.lexists(link) or not os.path.exists(target):
            return False
        os.symlink(target, link)
        return True

    return await asyncio.to_thread(_symlink)
