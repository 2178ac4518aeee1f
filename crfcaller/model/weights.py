"""
Weight files, gate reordering and per-channel int8 weight quantization.

A model directory holds one file per tensor, named ``<tensor name>.tensor``
(e.g. ``0.conv.weight.tensor``). The tensor names follow the layer numbering of
the exported network:

    0-2   convolutions        (<i>.conv.weight, <i>.conv.bias)
    4-8   LSTM layers         (<i>.rnn.weight_ih_l0, weight_hh_l0, bias_ih_l0, bias_hh_l0)
    9     linear / CRF head   (9.linear.weight, 9.linear.bias when biased)
    10    decomposed head     (10.linear.weight)
"""

import logging
from pathlib import Path

import torch

from crfcaller.errors import WeightError
from crfcaller.model.kernels import I8_RANGE, round_half_away

logger = logging.getLogger(__name__)

TENSOR_SUFFIX = '.tensor'
QUANTIZATION_LEVELS = 256
CONV_LAYERS = (0, 1, 2)
LSTM_LAYERS = (4, 5, 6, 7, 8)
LSTM_TENSORS = ('weight_ih_l0', 'weight_hh_l0', 'bias_ih_l0', 'bias_hh_l0')


def required_tensor_names(decomposition=0, bias=True):
    """Ordered list of the tensor names a model with the given head needs."""
    names = []
    for i in CONV_LAYERS:
        names += [f"{i}.conv.weight", f"{i}.conv.bias"]
    for i in LSTM_LAYERS:
        names += [f"{i}.rnn.{t}" for t in LSTM_TENSORS]
    names.append("9.linear.weight")
    if bias:
        names.append("9.linear.bias")
    if decomposition:
        names.append("10.linear.weight")
    return names


def load_tensors(model_dir, names):
    """
    Load ``<name>.tensor`` for every name from ``model_dir``.

    Raises:
        WeightError: a file is missing or cannot be deserialized.
    """
    model_dir = Path(model_dir)
    tensors = {}
    for name in names:
        path = model_dir / (name + TENSOR_SUFFIX)
        if not path.is_file():
            raise WeightError(f"missing weight file {path}")
        try:
            tensor = torch.load(path, map_location='cpu', weights_only=True)
        except Exception as e:
            raise WeightError(f"cannot read weight file {path}: {e}") from e
        if not isinstance(tensor, torch.Tensor):
            raise WeightError(f"{path} does not contain a tensor")
        tensors[name] = tensor
    logger.debug("loaded %d tensors from %s", len(tensors), model_dir)
    return tensors


def save_tensors(model_dir, tensors):
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    for name, tensor in tensors.items():
        torch.save(tensor.detach().cpu().contiguous(), model_dir / (name + TENSOR_SUFFIX))


def rearrange_gates(t, layer_width=None):
    """
    Reorder the gate blocks of an LSTM weight or bias from the stored
    input/forget/cell/output order to the execution order cell/input/forget/output.

    Works on any tensor whose first dimension is 4 * layer_width. Returns a new tensor.
    """
    if layer_width is None:
        layer_width = t.shape[0] // 4
    if t.shape[0] != 4 * layer_width:
        raise WeightError(f"gate dimension {t.shape[0]} is not 4 x {layer_width}")
    i, f, g, o = t.split(layer_width, dim=0)
    return torch.cat([g, i, f, o], dim=0)


def quantize_tensor(t, levels=QUANTIZATION_LEVELS, scale=None):
    """
    Symmetric per-column int8 quantization of a 2-D tensor.

    fp_range[j] = 2 * max(|max_i t[i, j]|, |min_i t[i, j]|)
    scale[j]    = levels / fp_range[j]
    codes       = clip(round_half_away(t * scale), -127, 127)

    A precomputed ``scale`` can be passed in to re-quantize with the same grid;
    quantizing the dequantized values of a previous call with its scale returns
    the same codes.

    Returns:
        (scale, codes): float32 scale of shape (columns,), int8 codes shaped like t.
    """
    if t.dim() != 2:
        raise WeightError(f"expected a 2-D tensor, got shape {tuple(t.shape)}")
    t = t.float()
    if scale is None:
        fp_max = torch.abs(t.max(dim=0).values)
        fp_min = torch.abs(t.min(dim=0).values)
        fp_range = torch.maximum(fp_max, fp_min) * 2
        # all-zero columns
        fp_range = torch.where(fp_range > 0, fp_range, torch.ones_like(fp_range))
        scale = levels / fp_range
    codes = round_half_away(t * scale).clamp_(-I8_RANGE, I8_RANGE).to(torch.int8)
    return scale, codes


def dequantize(codes, scale):
    return codes.float() / scale
