"""
沙箱核心（session / workspace / installer / executor / REPL / reaper）。

说明：
- 各组件均为进程内对象，由 `foundry_sandbox.core.runtime.SandboxRuntime` 统一装配；
- API 层只通过 runtime 访问共享状态。
"""
