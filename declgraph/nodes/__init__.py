"""Node library: leaves, element-wise math, tensor manipulation, learning, layers, convolution."""

from declgraph.nodes.leaf import (
    Constant,
    CoordinateTensor,
    PlaceHolder,
    RandomUniformTensor,
    SubGraphPlaceHolder,
    Variable,
    random_state_tensor,
)
from declgraph.nodes.unary import (
    Absolute,
    ArcCosine,
    ArcSine,
    ArcTangent,
    Base2Exponent,
    Base2Logarithm,
    Base10Exponent,
    Base10Logarithm,
    Ceiling,
    Cosine,
    ErrorFunction,
    Exponent,
    Floor,
    HyperbolicCosine,
    HyperbolicSine,
    HyperbolicTangent,
    Identity,
    IsFinite,
    IsInfinite,
    IsNaN,
    LeakyReLU,
    Logarithm,
    Mean,
    Negative,
    Reciprocal,
    ReciprocalSquareRoot,
    ReLU,
    Round,
    Sigmoid,
    Sign,
    Sine,
    SoftMax,
    Square,
    SquareRoot,
    Tangent,
    Tanh,
    Truncate,
    Variance,
)
from declgraph.nodes.binary import (
    NOT,
    Addition,
    ArcTangent2,
    Division,
    Equal,
    FloorModulo,
    GreaterThan,
    GreaterThanOrEqualTo,
    LessThan,
    LessThanOrEqualTo,
    LogicalAND,
    LogicalNAND,
    LogicalNOR,
    LogicalOR,
    LogicalXNOR,
    LogicalXOR,
    MatrixMultiplication,
    Maximum,
    Minimum,
    Modulo,
    Multiplication,
    NotEqual,
    Power,
    Subtraction,
)
from declgraph.nodes.ternary import Clamp, Select
from declgraph.nodes.tensor_ops import (
    Cast,
    Concatenate,
    ExpandDimension,
    Flatten2D,
    OneHot,
    Reduction,
    ReductionOperation,
    Reshape,
    Split,
    Squeeze,
    Stack,
    TopK,
    Transpose,
)
from declgraph.nodes.learning import (
    Learning,
    LearningOptimizer,
    LossReduction,
    MeanAbsoluteErrorLoss,
    MeanSquaredErrorLoss,
    SoftMaxCrossEntropy,
)
from declgraph.nodes.layers import (
    ActivationFunction,
    BatchNormalization,
    FullyConnectedLayer,
    GRULayer,
    LSTMLayer,
    RNNActivation,
    RNNLayer,
    SingleGateRNN,
)
from declgraph.nodes.convolution import (
    Convolution2D,
    ConvolutionLayer,
    MaxPooling2D,
    Padding,
    PoolingFunction,
    PoolingLayer,
)

__all__ = [
    # Leaves
    "Constant", "CoordinateTensor", "PlaceHolder", "RandomUniformTensor",
    "SubGraphPlaceHolder", "Variable", "random_state_tensor",
    # Unary
    "Absolute", "ArcCosine", "ArcSine", "ArcTangent", "Base2Exponent",
    "Base2Logarithm", "Base10Exponent", "Base10Logarithm", "Ceiling", "Cosine",
    "ErrorFunction", "Exponent", "Floor", "HyperbolicCosine", "HyperbolicSine",
    "HyperbolicTangent", "Identity", "IsFinite", "IsInfinite", "IsNaN",
    "LeakyReLU", "Logarithm", "Mean", "Negative", "Reciprocal",
    "ReciprocalSquareRoot", "ReLU", "Round", "Sigmoid", "Sign", "Sine",
    "SoftMax", "Square", "SquareRoot", "Tangent", "Tanh", "Truncate", "Variance",
    # Binary
    "NOT", "Addition", "ArcTangent2", "Division", "Equal", "FloorModulo",
    "GreaterThan", "GreaterThanOrEqualTo", "LessThan", "LessThanOrEqualTo",
    "LogicalAND", "LogicalNAND", "LogicalNOR", "LogicalOR", "LogicalXNOR",
    "LogicalXOR", "MatrixMultiplication", "Maximum", "Minimum", "Modulo",
    "Multiplication", "NotEqual", "Power", "Subtraction",
    # Ternary
    "Clamp", "Select",
    # Tensor manipulation
    "Cast", "Concatenate", "ExpandDimension", "Flatten2D", "OneHot",
    "Reduction", "ReductionOperation", "Reshape", "Split", "Squeeze", "Stack",
    "TopK", "Transpose",
    # Learning
    "Learning", "LearningOptimizer", "LossReduction", "MeanAbsoluteErrorLoss",
    "MeanSquaredErrorLoss", "SoftMaxCrossEntropy",
    # Layers
    "ActivationFunction", "BatchNormalization", "FullyConnectedLayer",
    "GRULayer", "LSTMLayer", "RNNActivation", "RNNLayer", "SingleGateRNN",
    # Convolution and pooling
    "Convolution2D", "ConvolutionLayer", "MaxPooling2D", "Padding",
    "PoolingFunction", "PoolingLayer",
]
