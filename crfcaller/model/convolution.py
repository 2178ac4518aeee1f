# [文件名: convolution.py]
# 1-D convolution + Swish (+ optional clamp). The last convolution of the model can
# also hand its output straight to the LSTM stack in the layout that stack wants.

import logging

import torch
import torch.nn as nn

from crfcaller.errors import LayoutError
from crfcaller.model.kernels import (
    SWISH_LOWER_BOUND,
    activation_quant_params,
    bias_swish_clamp_,
    bias_swish_i8,
)
from crfcaller.model.layers import Swish
from crfcaller.model.layout import check_stride, interleaved_buffer, to_sequence_major, window

logger = logging.getLogger(__name__)

OUTPUT_LAYOUTS = ('ntc', 'interleaved')


class Convolution(nn.Module):
    """
    Conv1d(insize -> size, winlen, stride, padding=winlen // 2) followed by Swish and,
    when ``clamp`` is set, a clamp to [SWISH_LOWER_BOUND, max_value].

    Args:
        to_lstm: this is the convolution feeding the LSTM stack. Its output is then
            (N, T_out, C) instead of (N, C, T_out).
        fused: compute the convolution as a windowed matmul with a fused
            bias+swish+clamp epilogue. Only meaningful with ``to_lstm``.
        output_layout: 'ntc' or 'interleaved'. The interleaved layout is the
            (T_out+1, N, 2, C) buffer the matrix LSTM stack works in.
        int8_output: quantize the interleaved output to int8 (requires clamp).
    """

    def __init__(self, insize, size, winlen, stride=1, clamp=False, max_value=3.5,
                 to_lstm=False, fused=False, output_layout='ntc', int8_output=False):
        super().__init__()
        if output_layout not in OUTPUT_LAYOUTS:
            raise ValueError(f"unknown output layout {output_layout!r}")
        if int8_output and not (clamp and fused and output_layout == 'interleaved'):
            raise ValueError("int8 output needs a clamped, fused convolution writing the interleaved layout")
        self.insize = insize
        self.size = size
        self.winlen = winlen
        self.stride = stride
        self.clamp = clamp
        self.max_value = max_value
        self.to_lstm = to_lstm
        self.fused = fused and to_lstm
        self.output_layout = output_layout
        self.int8_output = int8_output
        self.conv = nn.Conv1d(insize, size, winlen, stride=stride, padding=winlen // 2, bias=True)
        self.activation = Swish()

    @property
    def activation_scale(self):
        """(scale, zero_offset) of the int8 output, or None when the output is floating point."""
        if not self.int8_output:
            return None
        return activation_quant_params(self.max_value)

    def forward(self, x):
        if x.dim() != 3 or x.shape[1] != self.insize:
            raise LayoutError(
                f"convolution expects (N, {self.insize}, T) input, got shape {tuple(x.shape)}"
            )
        if self.to_lstm:
            check_stride(x.shape[2], self.stride)
            if self.fused:
                return self.forward_fused(x)

        x = self.activation(self.conv(x))
        if self.clamp:
            x = x.clamp(SWISH_LOWER_BOUND, self.max_value)
        if self.to_lstm:
            return to_sequence_major(x)
        return x

    def forward_fused(self, x):
        N = x.shape[0]
        T_out = x.shape[2] // self.stride
        weights = self.conv.weight.view(self.size, -1).t()  # (C_in * W, C_out)
        bias = self.conv.bias
        max_value = self.max_value if self.clamp else None

        if self.output_layout == 'ntc':
            ntcw = window(x, self.winlen, self.stride, time_major=False)
            res = torch.matmul(ntcw.view(N * T_out, -1), weights)
            bias_swish_clamp_(res, bias, max_value)
            return res.view(N, T_out, self.size)

        tncw = window(x, self.winlen, self.stride, time_major=True)
        mm = torch.matmul(tncw.view(T_out * N, -1), weights).view(T_out, N, self.size)
        if self.int8_output:
            scale, zero_offset = activation_quant_params(self.max_value)
            q = bias_swish_i8(mm, bias, scale, zero_offset)
            res = torch.zeros((T_out + 1, N, 2, self.size), dtype=torch.int8, device=x.device)
            res[1:, :, 1] = q
            return res
        bias_swish_clamp_(mm, bias, max_value)
        return interleaved_buffer(mm)

    def extra_repr(self):
        return 'clamp={}, max_value={}, to_lstm={}, fused={}, output_layout={}, int8_output={}'.format(
            self.clamp, self.max_value, self.to_lstm, self.fused, self.output_layout, self.int8_output
        )
