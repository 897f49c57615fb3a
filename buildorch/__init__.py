"""buildorch - 多语言服务构建编排引擎"""

__version__ = "0.3.0"
