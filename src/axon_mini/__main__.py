"""主入口模块

python -m axon_mini 与 axon-mini 命令等价：
1. 加载配置文件
2. 初始化日志系统
3. 执行CLI命令
"""

from .cli import main

if __name__ == '__main__':
    main()
