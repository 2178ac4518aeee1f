# [文件名: lstm.py]
# The five layer LSTM stack of the CRF model and its execution strategies.
#
#   reference  - torch.nn.LSTM per layer, any device
#   matrix     - one matmul per timestep against [W_ih | W_hh] on an interleaved
#                (T+1, N, 2, C) buffer, optional int8 weights for layers 1..4
#   quantized  - x @ W_ih for the whole chunk, then a recurrent loop with int8
#                W_hh over a fixed chunk table, writing back into x

import logging
import threading
from collections import namedtuple

import torch
import torch.nn as nn

from crfcaller.errors import LayoutError
from crfcaller.model.kernels import i8_to_float, lstm_step_
from crfcaller.model.layout import from_interleaved, interleaved_buffer, to_time_major
from crfcaller.model.weights import quantize_tensor, rearrange_gates

logger = logging.getLogger(__name__)

# widths with a dedicated quantized kernel, tune per deployment
QUANTIZED_LAYER_SIZES = (96, 128)
QUANTIZED_MIN_CAPABILITY = (6, 1)
INT8_MIN_CAPABILITY = (8, 0)

NUM_LAYERS = 5
# reverse, forward, reverse, forward, reverse
DIRECTIONS = tuple((NUM_LAYERS - i) % 2 == 1 for i in range(NUM_LAYERS))


class LazyState:
    """
    One-time, thread-safe materialization of derived state.

    The first caller of ``get`` runs ``factory`` while holding the lock; concurrent
    first callers block on the lock and then see the READY value. Once READY,
    ``get`` only checks a flag.
    """

    UNINITIALIZED = 'uninitialized'
    MATERIALIZING = 'materializing'
    READY = 'ready'

    def __init__(self, factory):
        self._factory = factory
        self._lock = threading.Lock()
        self._status = self.UNINITIALIZED
        self._value = None
        self.materializations = 0

    @property
    def status(self):
        return self._status

    @property
    def ready(self):
        return self._status is self.READY

    def get(self, *args, **kwargs):
        if self._status is self.READY:
            return self._value
        with self._lock:
            if self._status is not self.READY:
                self._status = self.MATERIALIZING
                try:
                    value = self._factory(*args, **kwargs)
                except BaseException:
                    self._status = self.UNINITIALIZED
                    raise
                self._value = value
                self.materializations += 1
                self._status = self.READY
        return self._value


class LSTM(nn.Module):
    """Single direction, batch-first LSTM layer. A reverse layer runs on the time flipped sequence."""

    def __init__(self, size, insize, bias=True, reverse=False):
        super().__init__()
        self.rnn = nn.LSTM(insize, size, bias=bias, batch_first=True)
        self.reverse = reverse

    def forward(self, x):
        if self.reverse:
            x = x.flip(1)
        y, h = self.rnn(x)
        if self.reverse:
            y = y.flip(1)
        return y

    def weights(self):
        """Detached (weight_ih, weight_hh, bias_ih, bias_hh) in the stored gate order."""
        rnn = self.rnn
        return (
            rnn.weight_ih_l0.detach(),
            rnn.weight_hh_l0.detach(),
            rnn.bias_ih_l0.detach(),
            rnn.bias_hh_l0.detach(),
        )

    def extra_repr(self):
        return 'reverse={}'.format(self.reverse)


# --- 策略注册表 ---
strategies = {}


def register_strategy(stack):
    strategies[stack.strategy] = stack
    return stack


class LSTMStack(nn.Module):
    """
    Common base of the strategies. All of them hold the same five ``LSTM`` layers so
    that weights load identically; the derived strategies read these parameters
    once, on the first forward call, and keep their own rearranged copies.
    """

    strategy = None

    def __init__(self, size, logger=None):
        super().__init__()
        self.size = size
        self.logger = logger or logging.getLogger(__name__)
        self.rnns = nn.ModuleList([LSTM(size, size, reverse=reverse) for reverse in DIRECTIONS])

    def extra_repr(self):
        return 'strategy={}, size={}'.format(self.strategy, self.size)


@register_strategy
class ReferenceLSTMStack(LSTMStack):
    strategy = 'reference'

    def forward(self, x):
        if x.dim() != 3 or x.shape[2] != self.size:
            raise LayoutError(f"LSTM stack expects (N, T, {self.size}) input, got shape {tuple(x.shape)}")
        for rnn in self.rnns:
            x = rnn(x)
        return x


MatrixLayer = namedtuple('MatrixLayer', ['weights', 'scale', 'bias', 'reverse'])


@register_strategy
class MatrixLSTMStack(LSTMStack):
    """
    Per-timestep matmul strategy over the interleaved buffer.

    A forward layer at step t reads row t ([x_t | h_t-1]) and writes h_t to the right
    slot of row t+1. A reverse layer at step t reads row t+1 ([h_t+1 | x_t]) and writes
    h_t to the left slot of row t, which is why its weights are concatenated as
    [W_hh | W_ih]. Each layer leaves its output exactly where the next layer reads
    its input.

    Args:
        quantize: int8 weights (per output channel) for layers 1..4.
        input_scale: (scale, zero_offset) of int8 interleaved input, if any.
    """

    strategy = 'matrix'

    def __init__(self, size, quantize=False, input_scale=None, logger=None):
        super().__init__(size, logger=logger)
        self.quantize = quantize
        self.input_scale = input_scale
        self.state = LazyState(self._materialize)

    def _materialize(self, device, dtype):
        layers = []
        for i, rnn in enumerate(self.rnns):
            w_ih, w_hh, b_ih, b_hh = rnn.weights()
            w_ih = rearrange_gates(w_ih)
            w_hh = rearrange_gates(w_hh)
            bias = rearrange_gates(b_ih + b_hh)
            if rnn.reverse:
                weights = torch.cat([w_hh, w_ih], dim=1)
            else:
                weights = torch.cat([w_ih, w_hh], dim=1)
            weights = weights.t().contiguous()  # (2C, 4C)
            if self.quantize and i > 0:
                scale, codes = quantize_tensor(weights)
                layers.append(MatrixLayer(codes.to(device), scale.to(device, dtype), bias.to(device, dtype), rnn.reverse))
            else:
                layers.append(MatrixLayer(weights.to(device, dtype), None, bias.to(device, dtype), rnn.reverse))
        self.logger.debug("matrix LSTM weights rearranged (quantize=%s)", self.quantize)
        return layers

    def to_buffer(self, x):
        if x.dim() == 3:
            if x.shape[2] != self.size:
                raise LayoutError(f"LSTM stack expects (N, T, {self.size}) input, got shape {tuple(x.shape)}")
            return interleaved_buffer(to_time_major(x))
        if x.dim() != 4 or x.shape[2] != 2 or x.shape[3] != self.size:
            raise LayoutError(f"expected a (T+1, N, 2, {self.size}) buffer, got shape {tuple(x.shape)}")
        if x.dtype == torch.int8:
            if self.input_scale is None:
                raise LayoutError("int8 input buffer but no activation scale configured")
            buf = i8_to_float(x, *self.input_scale, dtype=self.rnns[0].rnn.weight_ih_l0.dtype)
            buf[0, :, 1] = 0
            buf[-1, :, 0] = 0
            return buf
        return x.contiguous()

    def forward(self, x):
        buf = self.to_buffer(x)
        layers = self.state.get(buf.device, buf.dtype)
        T = buf.shape[0] - 1
        N = buf.shape[1]
        rows = buf.view(T + 1, N, 2 * self.size)

        for layer in layers:
            weights = layer.weights if layer.scale is None else layer.weights.to(buf.dtype)
            state = buf.new_zeros((N, self.size))
            for ts in range(T):
                if layer.reverse:
                    t_in, out = rows[T - ts], buf[T - ts - 1, :, 0]
                else:
                    t_in, out = rows[ts], buf[ts + 1, :, 1]
                gates = torch.matmul(t_in, weights)
                if layer.scale is not None:
                    gates.div_(layer.scale)
                lstm_step_(gates, layer.bias, state, out)

        return from_interleaved(buf)


QuantizedLayer = namedtuple('QuantizedLayer', ['w_ih', 'codes', 'scale', 'bias', 'reverse'])
QuantizedState = namedtuple('QuantizedState', ['layers', 'chunks'])


def chunk_table(batch_size, chunk_size, device=None):
    """(batch, 4) int32 rows of [input offset, length, output offset, 0] into the flattened (N*T, C) tensors."""
    offsets = torch.arange(0, batch_size * chunk_size, chunk_size, dtype=torch.int32)
    lengths = torch.full((batch_size,), chunk_size, dtype=torch.int32)
    chunks = torch.stack([offsets, lengths, offsets, torch.zeros_like(offsets)], dim=1)
    return chunks.to(device)


def lstm_quantized_(chunks, gates_x, codes, scale, bias, out, reverse):
    """
    Recurrent part of one quantized layer.

    gates_x: (N*T, 4C) precomputed input contribution x @ W_ih.
    out:     (N*T, C) destination, written row by row through the chunk table.
    """
    in_offsets = chunks[:, 0].long()
    lengths = chunks[:, 1]
    out_offsets = chunks[:, 2].long()
    chunk_size = int(lengths[0])
    if bool((lengths != chunk_size).any()):
        raise LayoutError("quantized LSTM chunks must all have the same length")

    N = chunks.shape[0]
    C = out.shape[1]
    weights = codes.to(out.dtype)
    state = out.new_zeros((N, C))
    h = out.new_zeros((N, C))
    for ts in range(chunk_size):
        t = chunk_size - 1 - ts if reverse else ts
        gates = torch.matmul(h, weights).div_(scale).add_(gates_x[in_offsets + t])
        lstm_step_(gates, bias, state, h)
        out.index_copy_(0, out_offsets + t, h)
    return out


@register_strategy
class QuantizedLSTMStack(LSTMStack):
    strategy = 'quantized'

    def __init__(self, size, logger=None):
        super().__init__(size, logger=logger)
        self.state = LazyState(self._materialize)

    def _materialize(self, device, dtype, batch_size, chunk_size):
        layers = []
        for rnn in self.rnns:
            w_ih, w_hh, b_ih, b_hh = rnn.weights()
            w_ih_t = rearrange_gates(w_ih).t().contiguous()  # (C, 4C)
            scale, codes = quantize_tensor(rearrange_gates(w_hh).t())
            bias = rearrange_gates(b_ih + b_hh)
            layers.append(QuantizedLayer(
                w_ih_t.to(device, dtype), codes.to(device), scale.to(device, dtype), bias.to(device, dtype), rnn.reverse
            ))
        self.logger.debug("quantized LSTM state built for batch %d, chunk %d", batch_size, chunk_size)
        return QuantizedState(layers, chunk_table(batch_size, chunk_size, device))

    def forward(self, x):
        if x.dim() != 3 or x.shape[2] != self.size:
            raise LayoutError(f"LSTM stack expects (N, T, {self.size}) input, got shape {tuple(x.shape)}")
        N, T, C = x.shape
        state = self.state.get(x.device, x.dtype, N, T)
        if state.chunks.shape[0] != N or int(state.chunks[0, 1]) != T:
            raise LayoutError(
                f"quantized LSTM stack was built for {state.chunks.shape[0]} chunks of {int(state.chunks[0, 1])} "
                f"steps, got input shape {tuple(x.shape)}"
            )
        x = x.contiguous()
        flat = x.view(N * T, C)
        for layer in state.layers:
            gates_x = torch.matmul(flat, layer.w_ih)
            lstm_quantized_(state.chunks, gates_x, layer.codes, layer.scale, layer.bias, flat, layer.reverse)
        return x


def select_lstm_strategy(device_type, layer_size, capability=None, requested='auto', logger=None):
    """
    Pick the LSTM strategy for a device.

    cpu / mps                                  -> reference
    cuda, width in QUANTIZED_LAYER_SIZES,
          capability >= QUANTIZED_MIN_CAPABILITY -> quantized
    any other cuda                             -> matrix

    A forced ``requested`` strategy is honoured when the width supports it;
    otherwise the reference strategy is used and a warning logged.
    """
    logger = logger or logging.getLogger(__name__)
    if requested not in ('auto', *strategies):
        raise ValueError(f"unknown LSTM strategy {requested!r}, expected one of {['auto', *strategies]}")

    if requested != 'auto':
        if requested == 'quantized' and layer_size not in QUANTIZED_LAYER_SIZES:
            logger.warning("no quantized LSTM kernel for width %d, using the reference LSTM", layer_size)
            return 'reference'
        if requested == 'matrix' and layer_size % 4 != 0:
            logger.warning("matrix LSTM needs a width divisible by 4, got %d, using the reference LSTM", layer_size)
            return 'reference'
        return requested

    if device_type != 'cuda':
        return 'reference'
    if layer_size % 4 != 0:
        logger.warning("LSTM width %d is not divisible by 4, using the reference LSTM", layer_size)
        return 'reference'
    if layer_size in QUANTIZED_LAYER_SIZES:
        if capability is not None and tuple(capability) >= QUANTIZED_MIN_CAPABILITY:
            return 'quantized'
        logger.info("device capability %s is below %s, using the matrix LSTM", capability, QUANTIZED_MIN_CAPABILITY)
    return 'matrix'


def build_lstm_stack(strategy, size, quantize=False, input_scale=None, logger=None):
    if strategy == 'matrix':
        return MatrixLSTMStack(size, quantize=quantize, input_scale=input_scale, logger=logger)
    return strategies[strategy](size, logger=logger)
