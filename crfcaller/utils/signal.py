# [文件名: signal.py]
# Raw signal handling for basecalling: POD5 input, normalisation, and cutting a
# read into fixed size overlapping chunks / stitching the chunk outputs back.

import logging
import os
from pathlib import Path

import numpy as np
import pod5
import torch
import torch.nn.functional as F

from crfcaller.errors import RecordError

logger = logging.getLogger(__name__)


def normalize_signal(signal: np.ndarray) -> np.ndarray:
    """Median / MAD normalisation. Raises RecordError for a flat signal."""
    signal = np.asarray(signal, dtype=np.float32)
    if signal.size == 0:
        raise RecordError("empty signal")
    median = np.median(signal)
    mad = np.median(np.abs(signal - median))
    if mad == 0:
        raise RecordError("MAD is zero")
    return (signal - median) / mad


def chunk(signal, chunksize, overlap):
    """
    Cut a 1-D signal into (n, 1, chunksize) chunks overlapping by ``overlap`` samples.

    The chunks are aligned to the end of the signal; when the signal does not
    divide evenly, an extra chunk covering the start is prepended. Signals shorter
    than one chunk are zero padded at the end.
    """
    if chunksize <= overlap:
        raise ValueError(f"chunksize {chunksize} must be larger than overlap {overlap}")
    T = signal.shape[0]
    if T < chunksize:
        return F.pad(signal, (0, chunksize - T))[None, None]
    stub = (T - overlap) % (chunksize - overlap)
    chunks = signal[stub:].unfold(0, chunksize, chunksize - overlap)
    if stub > 0:
        chunks = torch.cat([signal[None, :chunksize], chunks], dim=0)
    return chunks.unsqueeze(1)


def stitch(chunks, chunksize, overlap, length, stride):
    """
    Inverse of ``chunk`` on the model output.

    Args:
        chunks: (n, T_chunk, ...) per-chunk outputs, T_chunk = chunksize // stride.
        length: number of samples in the original signal.

    Returns:
        (T, ...) with the overlapping halves of neighbouring chunks trimmed.
    """
    if chunks.shape[0] == 1:
        return chunks[0, :-(-length // stride)]

    semi_overlap = overlap // 2
    start, end = semi_overlap // stride, (chunksize - semi_overlap) // stride
    stub = (length - overlap) % (chunksize - overlap)
    first_chunk_end = (stub + semi_overlap) // stride if stub > 0 else end

    return torch.cat([
        chunks[0, :first_chunk_end],
        *chunks[1:-1, start:end],
        chunks[-1, start:],
    ])


def find_pod5_files(path, recursive=False):
    path = Path(path)
    if path.is_file():
        return [path]
    if not path.is_dir():
        raise FileNotFoundError(f"no such file or directory: {path}")
    pattern = '**/*.pod5' if recursive else '*.pod5'
    return sorted(path.glob(pattern))


def read_pod5(path, recursive=False):
    """
    Yield (read_id, signal in pA) for every read of every POD5 file under ``path``.
    """
    files = find_pod5_files(path, recursive)
    if not files:
        logger.warning("no .pod5 files found in %s", path)
    for filename in files:
        logger.debug("reading %s", os.fspath(filename))
        with pod5.Reader(filename) as reader:
            for read in reader.reads():
                yield str(read.read_id), read.signal_pa
