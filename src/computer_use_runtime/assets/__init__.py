"""包内静态资源（默认配置）。"""
