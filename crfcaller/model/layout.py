"""
Tensor layout transforms between the storage orders used by the model stages.

All transforms here are pure reshapes/copies: values are never changed.

    (N, C, T)          channel-major, what the convolutions consume
    (N, T, C)          sequence-major, what the reference LSTM stack consumes
    (T_out, N, C, W)   windowed, time-major, for matmul based convolution
    (T+1, N, 2, C)     interleaved double buffer for the matrix LSTM stack
"""

import torch
import torch.nn.functional as F

from crfcaller.errors import LayoutError


def check_stride(length, stride):
    if stride > 1 and length % stride != 0:
        raise LayoutError(
            f"time dimension {length} is not divisible by stride {stride}; pad the chunk first"
        )


def to_sequence_major(x):
    """(N, C, T) -> (N, T, C). The result is a non-contiguous view."""
    if x.dim() != 3:
        raise LayoutError(f"expected a 3-D (N, C, T) tensor, got shape {tuple(x.shape)}")
    return x.transpose(1, 2)


def to_time_major(x):
    """(N, T, C) -> (T, N, C). The result is a non-contiguous view."""
    if x.dim() != 3:
        raise LayoutError(f"expected a 3-D (N, T, C) tensor, got shape {tuple(x.shape)}")
    return x.transpose(0, 1)


def window(x, winlen, stride=1, time_major=False):
    """
    Cut a (N, C, T) tensor into overlapping kernel-sized slices.

    The input is zero padded by winlen // 2 on each side (same padding as the
    convolution it replaces), so that window t starts at sample t * stride - winlen // 2.

    Returns:
        (T_out, N, C, W) if time_major else (N, T_out, C, W), contiguous.
    """
    if x.dim() != 3:
        raise LayoutError(f"expected a 3-D (N, C, T) tensor, got shape {tuple(x.shape)}")
    check_stride(x.shape[2], stride)
    pad = winlen // 2
    windows = F.pad(x, (pad, pad)).unfold(2, winlen, stride)  # (N, C, T_out, W)
    if time_major:
        return windows.permute(2, 0, 1, 3).contiguous()
    return windows.permute(0, 2, 1, 3).contiguous()


def interleaved_buffer(x):
    """
    Build the (T+1, N, 2, C) working buffer of the matrix LSTM stack from a
    (T, N, C) tensor.

    The input lands in the right slot of rows 1..T. Rows [0, :, 1] and [T, :, 0]
    are zero: they are the initial hidden state h(-1) of the forward and reverse
    directions respectively.
    """
    if x.dim() != 3:
        raise LayoutError(f"expected a 3-D (T, N, C) tensor, got shape {tuple(x.shape)}")
    T, N, C = x.shape
    buf = x.new_zeros((T + 1, N, 2, C))
    buf[1:, :, 1] = x
    return buf


def from_interleaved(buf):
    """Left slot of rows 0..T-1 as (N, T, C). This is where a reverse layer writes."""
    if buf.dim() != 4 or buf.shape[2] != 2:
        raise LayoutError(f"expected a (T+1, N, 2, C) buffer, got shape {tuple(buf.shape)}")
    return buf[:-1, :, 0].transpose(0, 1)
