# stacknet/__init__.py

from .errors import (
    StacknetError,
    ShapeError,
    BatchShapeError,
    BuildError,
    GeneratorStateError,
    EngineError,
)
from .graph import Graph, Node, Machine, glorot_normal
from .layers import (
    Layer,
    Namer,
    Input,
    Dense,
    Conv2D,
    SimpleConv2D,
    MaxPooling2D,
    SimpleMaxPooling2D,
    Activation,
    Sigmoid,
    Relu,
    Tanh,
    Binary,
    Softmax,
    LeakyRelu,
    Dropout,
    Reshape,
    BinElemArithmetic,
    Add,
    Sub,
    HadamardProd,
    HadamardDiv,
    Dot,
    OneHot,
)
from .losses import LossFunc, mse_loss, bce_loss, cce_loss, l2_loss, weighted_additive_loss
from .model import Model
from .data_helper import (
    TrainingDataGenerator,
    TensorDataGenerator,
    SyntheticDataGenerator,
    batch_tensors,
    slice_batch,
    make_1d_tensor,
    make_2d_tensor,
)
from .training import FitConfig, Trainer, fit_config_from_mapping
from .callbacks import (
    TrainingCallback,
    csv_metrics_callback,
    csv_metrics_file_callback,
    save_params_callback,
    repeated_save_params_callback,
    custom_epoch_metric_callback,
    custom_batch_metric_callback,
    early_stopping_callback,
)
from .solvers import Solver, AdamSolver, SGDSolver, solver_from_config
from .diagnostics import LossHistory, parameter_stats, plot_metric_history
from .image_utils import images_to_tensor, tensor_to_images, resize_image, transform_image
from . import shapes

__all__ = [
    "StacknetError",
    "ShapeError",
    "BatchShapeError",
    "BuildError",
    "GeneratorStateError",
    "EngineError",
    "Graph",
    "Node",
    "Machine",
    "glorot_normal",
    "Layer",
    "Namer",
    "Input",
    "Dense",
    "Conv2D",
    "SimpleConv2D",
    "MaxPooling2D",
    "SimpleMaxPooling2D",
    "Activation",
    "Sigmoid",
    "Relu",
    "Tanh",
    "Binary",
    "Softmax",
    "LeakyRelu",
    "Dropout",
    "Reshape",
    "BinElemArithmetic",
    "Add",
    "Sub",
    "HadamardProd",
    "HadamardDiv",
    "Dot",
    "OneHot",
    "LossFunc",
    "mse_loss",
    "bce_loss",
    "cce_loss",
    "l2_loss",
    "weighted_additive_loss",
    "Model",
    "TrainingDataGenerator",
    "TensorDataGenerator",
    "SyntheticDataGenerator",
    "batch_tensors",
    "slice_batch",
    "make_1d_tensor",
    "make_2d_tensor",
    "FitConfig",
    "Trainer",
    "fit_config_from_mapping",
    "TrainingCallback",
    "csv_metrics_callback",
    "csv_metrics_file_callback",
    "save_params_callback",
    "repeated_save_params_callback",
    "custom_epoch_metric_callback",
    "custom_batch_metric_callback",
    "early_stopping_callback",
    "Solver",
    "AdamSolver",
    "SGDSolver",
    "solver_from_config",
    "LossHistory",
    "parameter_stats",
    "plot_metric_history",
    "images_to_tensor",
    "tensor_to_images",
    "resize_image",
    "transform_image",
    "shapes",
]
