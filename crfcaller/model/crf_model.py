# [文件名: crf_model.py]
# conv x3 -> LSTM x5 -> CRF head, assembled for one device, plus loading from a
# model directory.

import logging

import torch
import torch.nn as nn

from crfcaller.errors import WeightError
from crfcaller.model.config import load_model_config
from crfcaller.model.convolution import Convolution
from crfcaller.model.crf import ClampedLinearHead, LinearCRF
from crfcaller.model.kernels import activation_quant_params
from crfcaller.model.layers import Serial
from crfcaller.model.lstm import INT8_MIN_CAPABILITY, build_lstm_stack, select_lstm_strategy
from crfcaller.model.weights import LSTM_LAYERS, LSTM_TENSORS, load_tensors, required_tensor_names

logger = logging.getLogger(__name__)

CONV_MAX_VALUE = 3.5


def device_capability(device):
    device = torch.device(device)
    if device.type == 'cuda':
        return torch.cuda.get_device_capability(device)
    return None


class CRFModel(nn.Module):
    """
    Args:
        config: ``ModelConfig``.
        device_type: 'cpu', 'cuda' or 'mps'. Decides the LSTM strategy, whether the
            convolution/head use their fused paths, the output layout and blank expansion.
        capability: CUDA compute capability, when known.

    Output scores are (T, N, C) with expanded blanks on the cpu and (N, T, C)
    without them on accelerators. ``time_major`` and ``expanded`` report which.
    """

    def __init__(self, config, device_type='cpu', capability=None, logger=None):
        super().__init__()
        self.logger = logger or logging.getLogger(__name__)
        self.config = config
        self.stride = config.stride
        self.time_major = device_type == 'cpu'

        self.strategy = select_lstm_strategy(
            device_type, config.insize, capability, requested=config.backend, logger=self.logger
        )
        fused = self.strategy != 'reference'
        quantize = config.quantize
        if quantize is None:
            quantize = capability is not None and tuple(capability) >= INT8_MIN_CAPABILITY
        int8_activations = config.int8_activations and config.clamp and self.strategy == 'matrix'

        self.conv1 = Convolution(1, config.conv, 5, 1, clamp=config.clamp, max_value=CONV_MAX_VALUE)
        self.conv2 = Convolution(config.conv, 16, 5, 1, clamp=config.clamp, max_value=CONV_MAX_VALUE)
        self.conv3 = Convolution(
            16, config.insize, 19, config.stride, clamp=config.clamp, max_value=CONV_MAX_VALUE,
            to_lstm=True, fused=fused,
            output_layout='interleaved' if self.strategy == 'matrix' else 'ntc',
            int8_output=int8_activations,
        )
        input_scale = activation_quant_params(CONV_MAX_VALUE) if int8_activations else None
        self.rnns = build_lstm_stack(
            self.strategy, config.insize, quantize=quantize and self.strategy == 'matrix',
            input_scale=input_scale, logger=self.logger,
        )

        if config.head == 'crf':
            self.linear = LinearCRF(
                config.insize, config.outsize, bias=config.bias,
                expand_blanks=self.time_major, time_major=self.time_major, fused=fused,
            )
            self.expanded = self.time_major
        else:
            self.linear = ClampedLinearHead(
                config.insize, config.outsize, decomposition=config.decomposition,
                bias=config.bias, clamp=config.clamp, time_major=self.time_major,
            )
            self.expanded = False

        self.encoder = Serial([self.conv1, self.conv2, self.conv3, self.rnns, self.linear])
        self.logger.info(
            "CRF model: insize=%d stride=%d state_len=%d head=%s lstm=%s",
            config.insize, config.stride, config.state_len, config.head, self.strategy,
        )

    def forward(self, x):
        return self.encoder(x)

    def named_tensors(self):
        """Map of exported tensor names onto this model's parameters."""
        tensors = {}
        for i, conv in enumerate((self.conv1, self.conv2, self.conv3)):
            tensors[f"{i}.conv.weight"] = conv.conv.weight
            tensors[f"{i}.conv.bias"] = conv.conv.bias
        for layer, rnn in zip(LSTM_LAYERS, self.rnns.rnns):
            for name in LSTM_TENSORS:
                tensors[f"{layer}.rnn.{name}"] = getattr(rnn.rnn, name)
        head = self.linear
        first = head.linear if isinstance(head, LinearCRF) else head.linear1
        tensors["9.linear.weight"] = first.weight
        if first.bias is not None:
            tensors["9.linear.bias"] = first.bias
        if isinstance(head, ClampedLinearHead) and head.linear2 is not None:
            tensors["10.linear.weight"] = head.linear2.weight
        return tensors

    @torch.no_grad()
    def load_weights(self, tensors):
        """
        Copy exported tensors into the model.

        Raises:
            WeightError: a tensor is missing or its shape does not match.
        """
        params = self.named_tensors()
        for name, param in params.items():
            if name not in tensors:
                raise WeightError(f"missing tensor {name}")
            tensor = tensors[name]
            if tuple(tensor.shape) != tuple(param.shape):
                raise WeightError(
                    f"tensor {name} has shape {tuple(tensor.shape)}, expected {tuple(param.shape)}"
                )
            param.copy_(tensor)
        unused = set(tensors) - set(params)
        if unused:
            self.logger.warning("ignoring unexpected tensors: %s", sorted(unused))


def load_crf_model(model_dir, device='cpu', dtype=None, backend='auto', quantize=None,
                   int8_activations=False, logger=None):
    """
    Build a ``CRFModel`` for ``device`` from a model directory.

    Returns:
        (model, config): the model in eval mode on the device, and its ``ModelConfig``.
    """
    logger = logger or logging.getLogger(__name__)
    device = torch.device(device)
    if dtype is None:
        dtype = torch.float16 if device.type == 'cuda' else torch.float32
    config = load_model_config(model_dir, backend=backend, quantize=quantize,
                               int8_activations=int8_activations)
    model = CRFModel(config, device.type, device_capability(device), logger=logger)
    names = required_tensor_names(config.decomposition, config.bias)
    model.load_weights(load_tensors(model_dir, names))
    model = model.to(device=device, dtype=dtype).eval()
    logger.info("loaded model %s on %s (%s)", model_dir, device, dtype)
    return model, config
