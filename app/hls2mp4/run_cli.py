"""
HLS2MP4 CLI 启动脚本
"""
import sys
import os

# 添加父目录到Python路径
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

from hls2mp4.cli.cli import main

if __name__ == "__main__":
    main()
