from crfcaller.model.config import ModelConfig, load_model_config, parse_model_config
from crfcaller.model.crf_model import CRFModel, load_crf_model
from crfcaller.model.lstm import LazyState, select_lstm_strategy

__all__ = [
    'CRFModel',
    'LazyState',
    'ModelConfig',
    'load_crf_model',
    'load_model_config',
    'parse_model_config',
    'select_lstm_strategy',
]
