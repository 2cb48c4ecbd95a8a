"""配置（YAML overlays + pydantic schema）。"""
