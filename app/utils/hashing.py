"""
Content hashing for certificates and integrity checks
"""
import hashlib
from typing import Optional, Union


def compute_content_hash(content: Optional[Union[str, bytes]]) -> str:
    """SHA-256 hex digest; None hashes as empty content"""
    if content is None:
        content = b""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()
