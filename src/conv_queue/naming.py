"""Deterministic output file naming.

Names are derived from the input file *name*, not its content, so two
different uploads sharing a name map to the same output name.
"""

import hashlib
from typing import Optional

from .catalog import container_for

HASH_BYTES = 8  # 16 hex chars


def job_hash(input_file: str) -> str:
    """Fixed-width BLAKE2b digest of the input file name.

    Args:
        input_file: Input file name as submitted in the task

    Returns:
        16-character lowercase hex digest
    """
    return hashlib.blake2b(input_file.encode("utf-8"), digest_size=HASH_BYTES).hexdigest()


def output_file_name(input_file: str, format_id: str, quality: Optional[str] = None) -> str:
    """Build ``<hash>[-<quality>].<extension>``.

    Examples:
        >>> output_file_name("song.wav", "mp3")            # doctest: +SKIP
        '5c1f...e2.mp3'
        >>> output_file_name("clip.mov", "mp4-hq", "high") # doctest: +SKIP
        '9ad0...41-high.mp4'
    """
    stem = job_hash(input_file)
    if quality:
        stem = f"{stem}-{quality}"
    return f"{stem}.{container_for(format_id)}"
