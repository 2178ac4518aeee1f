# [文件名: crf.py]
# Output heads producing the per-timestep transition scores for CRF decoding.

import torch.nn as nn
import torch.nn.functional as F

from crfcaller.errors import LayoutError
from crfcaller.model.kernels import bias_tanh_scale_
from crfcaller.model.layers import Clamp

CRF_SCALE = 5
BLANK_SCORE = 2.0
HEAD_CLAMP = 4.0


def expand_blanks(scores, blank_score=BLANK_SCORE, n_base=4):
    """
    Insert a constant blank (stay) score in front of every group of ``n_base``
    move scores along the last dim: (..., C) -> (..., C + C // n_base).
    """
    C = scores.shape[-1]
    if C % n_base != 0:
        raise LayoutError(f"score dimension {C} is not a multiple of {n_base}")
    grouped = scores.contiguous().view(*scores.shape[:-1], C // n_base, n_base)
    return F.pad(grouped, (1, 0), value=blank_score).view(*scores.shape[:-1], -1)


class LinearCRF(nn.Module):
    """
    Linear -> tanh -> x scale, with optional blank expansion.

    Input (N, T, C). Output is (T, N, C') when ``time_major``, else (N, T, C').
    """

    def __init__(self, insize, outsize, bias=True, scale=CRF_SCALE, blank_score=BLANK_SCORE,
                 expand_blanks=False, time_major=False, fused=False):
        super().__init__()
        self.scale = scale
        self.blank_score = blank_score
        self.expand_blanks = expand_blanks
        self.time_major = time_major
        self.fused = fused
        self.linear = nn.Linear(insize, outsize, bias=bias)
        self.activation = nn.Tanh()

    def forward(self, x):
        if x.dim() != 3:
            raise LayoutError(f"CRF head expects (N, T, C) input, got shape {tuple(x.shape)}")
        N, T, _ = x.shape
        if self.fused:
            scores = x.reshape(N * T, -1).matmul(self.linear.weight.t())
            scores = bias_tanh_scale_(scores, self.linear.bias, self.scale).view(N, T, -1)
        else:
            scores = self.activation(self.linear(x)) * self.scale
        if self.expand_blanks:
            scores = expand_blanks(scores, self.blank_score)
        if self.time_major:
            return scores.transpose(0, 1)
        return scores

    def extra_repr(self):
        return 'scale={}, blank_score={}, expand_blanks={}, time_major={}, fused={}'.format(
            self.scale, self.blank_score, self.expand_blanks, self.time_major, self.fused
        )


class ClampedLinearHead(nn.Module):
    """
    Linear head of the newer models, optionally low-rank:

        decomposition > 0:  Linear(insize, decomposition) -> Linear(decomposition, outsize, bias=False)
        otherwise:          Linear(insize, outsize)

    followed by Clamp(-4, 4) when ``clamp`` is set.
    """

    def __init__(self, insize, outsize, decomposition=0, bias=True, clamp=False, time_major=False):
        super().__init__()
        self.time_major = time_major
        if decomposition:
            self.linear1 = nn.Linear(insize, decomposition, bias=bias)
            self.linear2 = nn.Linear(decomposition, outsize, bias=False)
        else:
            self.linear1 = nn.Linear(insize, outsize, bias=bias)
            self.linear2 = None
        self.clamp = Clamp(-HEAD_CLAMP, HEAD_CLAMP, active=clamp)

    def forward(self, x):
        if x.dim() != 3:
            raise LayoutError(f"linear head expects (N, T, C) input, got shape {tuple(x.shape)}")
        x = self.linear1(x)
        if self.linear2 is not None:
            x = self.linear2(x)
        x = self.clamp(x)
        if self.time_major:
            return x.transpose(0, 1)
        return x
