import random
import threading
import tomllib

import torch

from crfcaller.model.config import parse_model_config
from crfcaller.model.crf_model import CRFModel
from crfcaller.model.weights import save_tensors
from crfcaller.pipeline.messages import TERMINAL
from crfcaller.pipeline.sink import MessageSink

# bonito v3 style: flat encoder keys, LinearCRF head
LEGACY_CONFIG = """
[model]
package = "bonito.crf"

[labels]
labels = ["N", "A", "C", "G", "T"]

[global_norm]
state_len = 3

[encoder]
stride = 5
winlen = 19
scale = 5.0
features = 96
rnn_type = "lstm"
activation = "swish"
blank_score = 2.0
"""

# layer list style: clamped convolutions, decomposed linear head
SERIAL_CONFIG = """
[global_norm]
state_len = 3

[encoder]
type = "serial"

[[encoder.sublayers]]
type = "convolution"
insize = 1
size = 16
winlen = 5
stride = 1

[[encoder.sublayers]]
type = "convolution"
insize = 16
size = 16
winlen = 5
stride = 1

[[encoder.sublayers]]
type = "convolution"
insize = 16
size = 96
winlen = 19
stride = 5

[[encoder.sublayers]]
type = "permute"
dims = [2, 0, 1]

[[encoder.sublayers]]
type = "lstm"
size = 96
insize = 96
bias = true
reverse = true

[[encoder.sublayers]]
type = "linear"
in_features = 96
out_features = 32

[[encoder.sublayers]]
type = "clamp"
min = -4.0
max = 4.0
"""


def random_sequence(length, seed):
    rng = random.Random(seed)
    return "".join(rng.choice("ACGT") for _ in range(length))


def random_qualities(length, seed):
    rng = random.Random(seed)
    return "".join(chr(33 + rng.randint(2, 40)) for _ in range(length))


def write_model_dir(path, config_text=LEGACY_CONFIG, seed=0, move_bias=None):
    """
    Model directory holding config.toml and randomly initialised weights.

    ``move_bias`` shifts the CRF head towards moves so that every timestep calls a
    base; the random weights still decide which one.
    """
    config = parse_model_config(tomllib.loads(config_text))
    torch.manual_seed(seed)
    model = CRFModel(config)
    if move_bias is not None:
        with torch.no_grad():
            model.linear.linear.bias.fill_(move_bias)
    save_tensors(path, {name: t.detach() for name, t in model.named_tensors().items()})
    (path / "config.toml").write_text(config_text)
    return path


class MessageSinkToList(MessageSink):
    """Collects everything it receives."""

    def __init__(self, max_messages=100):
        super().__init__(max_messages, 1)
        self.messages = []
        self.terminals = 0

    def push_message(self, message):
        if message is TERMINAL:
            self.terminals += 1
        super().push_message(message)

    def process(self, message):
        self.messages.append(message)

    def get_messages(self):
        self.terminate()
        return self.messages
