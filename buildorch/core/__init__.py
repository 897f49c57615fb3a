"""核心层：模型、依赖图、调度、缓存、汇总"""
