"""
迁移核心模块 - robocopy/USMT 调用、差异计划、阶段编排
"""
