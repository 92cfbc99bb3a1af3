#!/usr/bin/env python3
"""
一键启动脚本
启动研究后端（study_app.main）和Agent运行时（study_app.agent.server）
"""

import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import httpx

project_root = Path(__file__).parent
backend_dir = project_root / "backend"

BACKEND_PORT = int(os.getenv("BACKEND_PORT", "8000"))
AGENT_PORT = int(os.getenv("AGENT_PORT", "8123"))


class AppLauncher:
    """应用启动器"""

    def __init__(self):
        self.processes = {}
        self.running = True

        signal.signal(signal.SIGINT, self.signal_handler)
        signal.signal(signal.SIGTERM, self.signal_handler)

    def signal_handler(self, signum, frame):
        print("\n🛑 收到停止信号，正在关闭服务...")
        self.running = False

    @staticmethod
    def check_health(url: str) -> bool:
        try:
            return httpx.get(url, timeout=5).status_code == 200
        except httpx.HTTPError:
            return False

    def start_service(self, name: str, module: str, port: int, health_url: str) -> bool:
        """以uvicorn子进程启动一个服务并等待健康检查通过"""
        print(f"🚀 启动{name}...")
        self.processes[name] = subprocess.Popen(
            [sys.executable, "-m", "uvicorn", module, "--host", "0.0.0.0", "--port", str(port)],
            cwd=backend_dir,
        )

        for _ in range(30):
            if self.check_health(health_url):
                print(f"✅ {name}启动成功!")
                return True
            time.sleep(1)

        print(f"❌ {name}启动超时")
        return False

    def cleanup(self):
        print("\n🧹 清理进程...")
        for name, process in self.processes.items():
            process.terminate()
            try:
                process.wait(timeout=5)
                print(f"✅ {name}已停止")
            except subprocess.TimeoutExpired:
                process.kill()
                print(f"⚠️  强制停止{name}")

    def run(self):
        print("🎯 Data-Aware Study Platform - 一键启动")
        print(f"📁 项目根目录: {project_root}")
        print("=" * 60)

        try:
            if not self.start_service("Agent运行时", "study_app.agent.server:app", AGENT_PORT,
                                      f"http://localhost:{AGENT_PORT}/ok"):
                return False
            if not self.start_service("研究后端", "study_app.main:app", BACKEND_PORT,
                                      f"http://localhost:{BACKEND_PORT}/docs"):
                return False

            print("\n" + "=" * 60)
            print(f"  🔧 研究API: http://localhost:{BACKEND_PORT}/api/study")
            print(f"  🤖 Agent代理: http://localhost:{BACKEND_PORT}/api/langgraph")
            print(f"  📚 API文档: http://localhost:{BACKEND_PORT}/docs")
            print("  • 按 Ctrl+C 停止所有服务")
            print("=" * 60)

            while self.running:
                time.sleep(1)
            return True
        finally:
            self.cleanup()


def main():
    launcher = AppLauncher()
    launcher.run()


if __name__ == "__main__":
    main()
