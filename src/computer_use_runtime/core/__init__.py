"""Agent 执行引擎（sampling loop、对外入口、错误分类）。"""
