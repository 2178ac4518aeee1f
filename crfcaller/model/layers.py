# [文件名: layers.py]
# Small building blocks shared by the CRF model: Swish, Clamp and Serial.

import torch
import torch.nn as nn


class Swish(torch.nn.SiLU):
    pass


class Clamp(nn.Module):
    def __init__(self, min, max, active=True):
        super().__init__()
        self.min = min
        self.max = max
        self.active = active

    def forward(self, x):
        if self.active:
            return torch.clamp(x, min=self.min, max=self.max)
        return x

    def extra_repr(self):
        return 'min={}, max={}, active={}'.format(self.min, self.max, self.active)


class Serial(torch.nn.Sequential):
    def __init__(self, sublayers):
        super().__init__(*sublayers)

    def __repr__(self):
        return torch.nn.ModuleList.__repr__(self)
