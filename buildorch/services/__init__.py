"""服务层：构建执行与编排"""
