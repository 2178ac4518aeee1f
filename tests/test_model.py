import tomllib
import typing

import pytest
import torch

from crfcaller.errors import ConfigError, WeightError
from crfcaller.model import CRFModel, ModelConfig, load_crf_model, load_model_config, parse_model_config
from crfcaller.model.crf import ClampedLinearHead, LinearCRF, expand_blanks
from crfcaller.model.weights import load_tensors, required_tensor_names

from helpers import LEGACY_CONFIG, SERIAL_CONFIG


class TestConfig:
    def test_legacy_layout(self):
        config = parse_model_config(tomllib.loads(LEGACY_CONFIG))
        assert (config.state_len, config.stride, config.insize) == (3, 5, 96)
        assert config.conv == 4
        assert config.bias
        assert not config.clamp
        assert config.outsize == 256
        assert config.head == 'crf'

    def test_serial_layout(self):
        config = parse_model_config(tomllib.loads(SERIAL_CONFIG))
        assert config.stride == 5
        assert config.insize == 96
        assert config.conv == 16
        assert config.clamp
        assert config.decomposition == 32
        # narrow models have no head bias
        assert not config.bias
        assert config.head == 'linear'

    def test_quantize_is_tri_state(self):
        hints = typing.get_type_hints(ModelConfig)
        assert hints["quantize"] == typing.Optional[bool]
        assert parse_model_config(tomllib.loads(LEGACY_CONFIG)).quantize is None
        assert parse_model_config(tomllib.loads(LEGACY_CONFIG), quantize=False).quantize is False

    def test_missing_section(self):
        with pytest.raises(ConfigError):
            parse_model_config({'encoder': {'stride': 5, 'features': 96}})

    def test_bad_backend(self):
        with pytest.raises(ConfigError):
            parse_model_config(tomllib.loads(LEGACY_CONFIG), backend='cudnn')

    def test_load_from_directory(self, tmp_path):
        (tmp_path / "config.toml").write_text(LEGACY_CONFIG)
        config = load_model_config(tmp_path, backend='matrix')
        assert config.backend == 'matrix'

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_model_config(tmp_path)

    def test_unparsable_file(self, tmp_path):
        (tmp_path / "config.toml").write_text("[encoder\nstride = ")
        with pytest.raises(ConfigError):
            load_model_config(tmp_path)


class TestHeads:
    def test_expand_blanks(self):
        scores = torch.arange(8, dtype=torch.float32).view(1, 1, 8)
        out = expand_blanks(scores, blank_score=2.0)
        assert out.view(-1).tolist() == [2., 0., 1., 2., 3., 2., 4., 5., 6., 7.]

    def test_linear_crf_range_and_layout(self):
        head = LinearCRF(16, 64, expand_blanks=True, time_major=True)
        out = head(torch.randn(2, 7, 16))
        assert out.shape == (7, 2, 80)
        assert out.abs().max() <= 5

    def test_fused_crf_matches(self):
        head = LinearCRF(16, 64)
        fused = LinearCRF(16, 64, fused=True)
        fused.load_state_dict(head.state_dict())
        x = torch.randn(2, 7, 16)
        with torch.no_grad():
            assert torch.allclose(fused(x), head(x), atol=1e-5)

    def test_decomposed_head(self):
        head = ClampedLinearHead(16, 64, decomposition=8, bias=False, clamp=True)
        assert head.linear1.bias is None
        with torch.no_grad():
            head.linear2.weight.fill_(10.0)
            out = head(torch.ones(1, 3, 16))
        assert out.shape == (1, 3, 64)
        assert out.abs().max() <= 4.0


class TestCRFModel:
    @pytest.mark.parametrize("config_text", [LEGACY_CONFIG, SERIAL_CONFIG])
    def test_tensor_names_cover_required(self, config_text):
        config = parse_model_config(tomllib.loads(config_text))
        model = CRFModel(config)
        assert sorted(model.named_tensors()) == sorted(required_tensor_names(config.decomposition, config.bias))

    def test_cpu_output_is_time_major_with_blanks(self):
        config = parse_model_config(tomllib.loads(LEGACY_CONFIG))
        model = CRFModel(config).eval()
        assert model.strategy == 'reference'
        with torch.no_grad():
            scores = model(torch.randn(2, 1, 500))
        assert scores.shape == (100, 2, 320)
        assert model.time_major and model.expanded

    def test_forced_matrix_backend_matches_reference(self):
        config = parse_model_config(tomllib.loads(LEGACY_CONFIG))
        reference = CRFModel(config).eval()
        matrix = CRFModel(parse_model_config(tomllib.loads(LEGACY_CONFIG), backend='matrix', quantize=False)).eval()
        assert matrix.strategy == 'matrix'
        matrix.load_weights({k: v.detach() for k, v in reference.named_tensors().items()})
        x = torch.randn(2, 1, 200)
        with torch.no_grad():
            assert torch.allclose(matrix(x), reference(x), atol=1e-3)

    def test_int8_activations_stay_close(self, serial_model_dir):
        reference, _ = load_crf_model(serial_model_dir)
        int8, _ = load_crf_model(serial_model_dir, backend='matrix', quantize=False, int8_activations=True)
        assert int8.conv3.int8_output
        x = torch.randn(2, 1, 200)
        with torch.no_grad():
            assert (int8(x) - reference(x)).abs().max() < 0.1

    def test_load_weights_shape_mismatch(self):
        model = CRFModel(parse_model_config(tomllib.loads(LEGACY_CONFIG)))
        tensors = {k: v.detach() for k, v in model.named_tensors().items()}
        tensors["0.conv.weight"] = torch.zeros(3, 1, 5)
        with pytest.raises(WeightError, match="0.conv.weight"):
            model.load_weights(tensors)


class TestLoadModel:
    def test_round_trip(self, legacy_model_dir):
        model, config = load_crf_model(legacy_model_dir)
        assert not model.training
        assert config.state_len == 3
        stored = load_tensors(legacy_model_dir, ["9.linear.weight"])["9.linear.weight"]
        assert torch.equal(model.linear.linear.weight, stored)

    def test_missing_weight(self, legacy_model_dir):
        (legacy_model_dir / "6.rnn.weight_hh_l0.tensor").unlink()
        with pytest.raises(WeightError, match="6.rnn.weight_hh_l0"):
            load_crf_model(legacy_model_dir)

    def test_unexpected_tensors_logged(self, caplog):
        model = CRFModel(parse_model_config(tomllib.loads(LEGACY_CONFIG)))
        tensors = {k: v.detach().clone() for k, v in model.named_tensors().items()}
        tensors["11.linear.weight"] = torch.zeros(2)
        model.load_weights(tensors)
        assert "11.linear.weight" in caplog.text
