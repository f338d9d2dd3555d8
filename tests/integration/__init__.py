"""
集成测试（integration tests）

说明：
- 该目录下的测试启动本地临时 HTTP server，分别模拟 BattleMetrics API 与 Discord webhook。
- 数据流走真实 HTTP（HttpClient / urllib），不依赖外网。
"""
