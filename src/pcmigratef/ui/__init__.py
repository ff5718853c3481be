"""
控制台显示模块
"""
