"""
配置模块汇总

保持 `import config; config.XXX` 与 `from config import XXX` 两种用法。
"""
from .settings import *
