"""Foundry Playground 后端（FastAPI：HTTP 路由 + WebSocket 通道 + CLI）。"""
