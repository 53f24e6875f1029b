"""
回测与参数优化
"""
