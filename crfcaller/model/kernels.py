# Fused elementwise kernels used by the accelerator code paths.
# Each one does the work of several torch ops in a single in-place pass over its
# output buffer, mirroring what the device kernels do.

import torch
import torch.nn.functional as F

SWISH_LOWER_BOUND = -0.278464543  # global minimum of x * sigmoid(x)
I8_RANGE = 127.0


def round_half_away(x):
    # torch.round rounds half to even
    return torch.sign(x) * torch.floor(torch.abs(x) + 0.5)


def bias_swish_clamp_(x, bias, max_value=None):
    """x <- clamp(swish(x + bias), SWISH_LOWER_BOUND, max_value), in place. bias broadcasts over the last dim."""
    if bias is not None:
        x.add_(bias)
    F.silu(x, inplace=True)
    if max_value is not None:
        x.clamp_(SWISH_LOWER_BOUND, max_value)
    return x


def activation_quant_params(max_value):
    """Scale and zero offset mapping [SWISH_LOWER_BOUND, max_value] onto [-127, 127]."""
    scale = 2 * I8_RANGE / (max_value - SWISH_LOWER_BOUND)
    zero_offset = scale * max_value - I8_RANGE
    return scale, zero_offset


def bias_swish_i8(x, bias, scale, zero_offset):
    y = F.silu(x + bias) if bias is not None else F.silu(x)
    q = round_half_away(y * scale - zero_offset).clamp_(-I8_RANGE, I8_RANGE)
    return q.to(torch.int8)


def i8_to_float(q, scale, zero_offset, dtype=torch.float32):
    return (q.to(dtype) + zero_offset) / scale


def lstm_step_(gates, bias, state, out):
    """
    One LSTM timestep, in place.

    gates: (N, 4C) pre-activations in execution (GIFO) order, overwritten.
    bias:  (4C,) combined input/hidden bias in GIFO order.
    state: (N, C) cell state, updated in place.
    out:   (N, C) destination for the new hidden state (may be a strided view).
    """
    gates.add_(bias)
    g, i, f, o = gates.chunk(4, dim=1)
    state.mul_(torch.sigmoid(f)).add_(torch.sigmoid(i) * torch.tanh(g))
    out.copy_(torch.sigmoid(o) * torch.tanh(state))
    return out


def bias_tanh_scale_(x, bias, scale):
    if bias is not None:
        x.add_(bias)
    return x.tanh_().mul_(scale)
