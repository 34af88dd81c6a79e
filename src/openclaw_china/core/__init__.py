"""核心类型与异常"""
