"""请求模型"""

from .data_model import (
    DataModelLoadError,
    DataModelSchema,
    PlanRequest,
    load_data_model,
    load_data_model_file,
    load_plan_request,
    load_plan_request_file,
)

__all__ = [
    "DataModelLoadError",
    "DataModelSchema",
    "PlanRequest",
    "load_data_model",
    "load_data_model_file",
    "load_plan_request",
    "load_plan_request_file",
]
