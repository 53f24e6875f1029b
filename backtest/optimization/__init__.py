"""
参数搜索算法（网格搜索 / 遗传算法）与评估进程池
"""
