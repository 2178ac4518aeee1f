"""
Model configuration: reading ``config.toml`` from a model directory and deriving
the architecture hyper-parameters from it.

Two encoder layouts are understood. Older models describe the encoder with flat
keys::

    [encoder]
    stride = 5
    features = 96

Newer models list their layers::

    [encoder]
    type = "serial"
    [[encoder.sublayers]]
    type = "convolution"
    stride = 1
    ...
    [[encoder.sublayers]]
    type = "lstm"
    size = 384
"""

import logging
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from crfcaller.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = 'config.toml'
BACKENDS = ('auto', 'reference', 'matrix', 'quantized')


@dataclass(frozen=True)
class ModelConfig:
    state_len: int
    stride: int
    insize: int
    conv: int = 4
    bias: bool = True
    clamp: bool = False
    decomposition: int = 0
    # 'auto' picks the LSTM strategy from the device
    backend: str = 'auto'
    # int8 LSTM weights on the matrix strategy: None = decide from the device
    quantize: Optional[bool] = None
    int8_activations: bool = False

    @property
    def outsize(self):
        return 4 ** self.state_len * 4

    @property
    def head(self):
        """'crf' for the tanh/scale CRF head, 'linear' for the clamped (possibly decomposed) head."""
        if self.decomposition or self.conv == 16:
            return 'linear'
        return 'crf'


def parse_model_config(config, backend='auto', quantize=None, int8_activations=False):
    """Derive a ``ModelConfig`` from a parsed config.toml dict."""
    if backend not in BACKENDS:
        raise ConfigError(f"unknown backend {backend!r}, expected one of {BACKENDS}")
    try:
        encoder = config['encoder']
        state_len = int(config['global_norm']['state_len'])

        conv, insize, stride, bias, clamp, decomposition = 4, 0, 1, True, False, 0
        if 'type' in encoder:
            for segment in encoder['sublayers']:
                kind = segment['type']
                if kind == 'convolution':
                    stride *= int(segment['stride'])
                elif kind == 'lstm':
                    insize = int(segment['size'])
                elif kind == 'linear':
                    decomposition = int(segment['out_features'])
                elif kind == 'clamp':
                    clamp = True
            conv = 16
            bias = insize > 128
        else:
            stride = int(encoder['stride'])
            insize = int(encoder['features'])
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"malformed model config: {e!r}") from e

    if insize <= 0 or stride <= 0 or state_len <= 0:
        raise ConfigError(f"invalid model dimensions: insize={insize}, stride={stride}, state_len={state_len}")

    return ModelConfig(
        state_len=state_len,
        stride=stride,
        insize=insize,
        conv=conv,
        bias=bias,
        clamp=clamp,
        decomposition=decomposition,
        backend=backend,
        quantize=quantize,
        int8_activations=int8_activations,
    )


def load_model_config(model_dir, **kwargs):
    path = Path(model_dir) / CONFIG_FILE
    if not path.is_file():
        raise ConfigError(f"no {CONFIG_FILE} in model directory {model_dir}")
    try:
        with open(path, 'rb') as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e
    model_config = parse_model_config(config, **kwargs)
    logger.debug("model config %s", model_config)
    return model_config
