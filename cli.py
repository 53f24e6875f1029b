"""
命令行工具 - 回测、参数优化、滚动验证与数据导出
"""
import argparse
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from backtest.adapters.storage.file_store import CandleFileStore
from backtest.data_provider import HistoricalDataProvider, SyntheticDataProvider
from backtest.domain.errors import BacktestError
from backtest.services.data_service import HistoricalDataStore
from backtest.services.export_service import ExportService
from backtest.services.orchestrator import BacktestOrchestrator
from config.settings import settings as config
from config.validator import BacktestConfig, GeneticConfig, OptimizationConfig, WalkForwardConfig, build_config
from logger_utils import get_logger

logger = get_logger("cli")


def _to_ms(value: str) -> int:
    dt = datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _number(text: str):
    value = float(text)
    return int(value) if value.is_integer() and '.' not in text else value


def parse_params(items: Optional[List[str]]) -> Dict[str, float]:
    """['short_period=9', 'long_period=21'] -> {'short_period': 9, 'long_period': 21}"""
    params = {}
    for item in items or []:
        name, _, value = item.partition('=')
        if not value:
            raise argparse.ArgumentTypeError(f"参数格式应为 name=value: {item}")
        params[name.strip()] = _number(value.strip())
    return params


def parse_ranges(items: Optional[List[str]]) -> Dict[str, Dict[str, float]]:
    """['short_period=5:20:5'] -> {'short_period': {'min': 5, 'max': 20, 'step': 5}}"""
    ranges = {}
    for item in items or []:
        name, _, bounds = item.partition('=')
        parts = bounds.split(':')
        if len(parts) != 3:
            raise argparse.ArgumentTypeError(f"参数范围格式应为 name=min:max:step: {item}")
        ranges[name.strip()] = dict(zip(('min', 'max', 'step'), (_number(p) for p in parts)))
    return ranges


def build_orchestrator(args) -> BacktestOrchestrator:
    """按命令行参数构建回测配置与数据仓库"""
    end = _to_ms(args.end) if args.end else int(datetime.now(timezone.utc).timestamp() * 1000)
    start = _to_ms(args.start) if args.start else end - int(timedelta(days=args.days).total_seconds() * 1000)

    overrides = {'start_date': start, 'end_date': end}
    if args.balance is not None:
        overrides['initial_balance'] = args.balance
    backtest_config = BacktestConfig.from_settings(**overrides)

    if args.synthetic is not None:
        source = SyntheticDataProvider(seed=args.synthetic)
        file_store = None
    else:
        source = HistoricalDataProvider(args.exchange)
        file_store = CandleFileStore(config.DATA_DIR)

    store = HistoricalDataStore(source, file_store=file_store)
    return BacktestOrchestrator(backtest_config, store, args.symbol, args.timeframe)


def build_optimization_config(args) -> OptimizationConfig:
    genetic = None
    if args.method == 'genetic':
        genetic = GeneticConfig.from_settings()
        if args.population:
            genetic = genetic.model_copy(update={'population_size': args.population})
        if args.generations:
            genetic = genetic.model_copy(update={'generations': args.generations})
    return build_config(
        OptimizationConfig,
        parameters=parse_ranges(args.param),
        objective=args.objective,
        direction=args.direction,
        method=args.method,
        genetic=genetic,
        seed=args.seed,
        max_workers=args.workers,
        time_budget_seconds=args.time_budget or None,
    )


def build_walk_forward_config(args) -> WalkForwardConfig:
    return build_config(
        WalkForwardConfig,
        training_period=args.train,
        testing_period=args.test,
        reoptimization_frequency=args.step,
        unit=args.unit,
        max_degradation=config.WALK_FORWARD_MAX_DEGRADATION,
    )


def _print_result(result):
    print("\n📊 回测结果:")
    print(f"   初始资金: {result.initial_balance:.2f}")
    print(f"   最终资金: {result.final_balance:.2f}")
    print(f"   收益率: {result.total_return_percent:+.2f}%")
    print(f"   最大回撤: {result.max_drawdown_percent:.2f}%")
    print(f"   交易次数: {result.total_trades}  胜率: {result.win_rate*100:.1f}%")
    print(f"   盈亏比: {result.profit_factor:.2f}  Calmar: {result.calmar_ratio:.2f}")


def _export(obj, args):
    if args.output:
        ExportService.export_report(obj, args.format, args.output)
        print(f"\n💾 已导出: {args.output}")


def cmd_backtest(args):
    """运行回测"""
    orchestrator = build_orchestrator(args)
    result = orchestrator.run_backtest(args.strategy, parse_params(args.set))
    _print_result(result)
    _export(result, args)


def cmd_optimize(args):
    """参数优化"""
    orchestrator = build_orchestrator(args)
    report, result = orchestrator.optimize_and_backtest(args.strategy, build_optimization_config(args))

    print(f"\n🔍 优化状态: {report.status.value}  评估 {len(report.evaluated)} 次")
    for rank, item in enumerate(report.results[:10], 1):
        print(f"   {rank}. 得分 {item.score:.4f}  参数 {item.parameters}")
    print(f"   过拟合得分: {report.overfitting_score:.3f}  稳健性: {report.robustness_score:.3f}")
    if result is not None:
        _print_result(result)
    _export(report, args)


def cmd_walk_forward(args):
    """滚动验证"""
    orchestrator = build_orchestrator(args)
    result = orchestrator.walk_forward(
        args.strategy, build_optimization_config(args), build_walk_forward_config(args)
    )

    print(f"\n🔁 滚动验证: {len(result.segments)} 个窗口 ({result.status.value})")
    for segment in result.segments:
        print(
            f"   窗口{segment.index + 1}: 样本内 {segment.in_sample_score:.4f}  "
            f"样本外 {segment.out_sample_score:.4f}  衰减 {segment.degradation:+.2%}"
        )
    print(f"   一致性: {result.stability.consistency_score:.2%}  稳健性: {result.robustness.robustness_score:.2%}")
    _export(result, args)


def cmd_analyze(args):
    """完整分析"""
    orchestrator = build_orchestrator(args)
    wf_config = build_walk_forward_config(args) if args.walk_forward else None
    report = orchestrator.run_full_analysis(
        args.strategy, build_optimization_config(args), wf_config, parse_params(args.set)
    )

    print(f"\n{report.summary}")
    print(f"\n📈 买入持有: {report.benchmark.benchmark_return*100:+.2f}%  超额: {report.benchmark.excess_return*100:+.2f}%")
    print("\n💡 优化建议:")
    for rec in report.recommendations:
        print(f"   [{rec['priority']}] {rec['title']}: {rec['action']}")
    _export(report, args)


def cmd_export_data(args):
    """导出K线数据"""
    orchestrator = build_orchestrator(args)
    candles = orchestrator.load_candles()
    content = HistoricalDataStore.export_candles(candles, args.format, args.output)
    if not args.output:
        print(content)


def _add_common(p):
    p.add_argument('--symbol', default=config.SYMBOL, help='交易对')
    p.add_argument('--timeframe', default=config.TIMEFRAME, help='K线周期')
    p.add_argument('--exchange', default=config.DATA_EXCHANGE, help='ccxt 交易所 id')
    p.add_argument('--start', help='开始日期 YYYY-MM-DD')
    p.add_argument('--end', help='结束日期 YYYY-MM-DD')
    p.add_argument('--days', type=int, default=30, help='未指定开始日期时回看天数')
    p.add_argument('--balance', type=float, help='初始资金')
    p.add_argument('--synthetic', type=int, metavar='SEED', help='使用随机游走数据（离线）')
    p.add_argument('--output', help='导出文件路径')
    p.add_argument('--format', choices=['json', 'csv'], default='json', help='导出格式')


def _add_strategy(p):
    p.add_argument('--strategy', default='ema_cross', help='策略名称')
    p.add_argument('--set', action='append', metavar='NAME=VALUE', help='策略参数（可重复）')


def _add_optimization(p):
    p.add_argument('--param', action='append', metavar='NAME=MIN:MAX:STEP', required=True, help='参数范围（可重复）')
    p.add_argument('--objective', default=config.OPTIMIZER_OBJECTIVE, help='优化目标')
    p.add_argument('--direction', choices=['maximize', 'minimize'], default='maximize')
    p.add_argument('--method', choices=['grid', 'genetic'], default='grid')
    p.add_argument('--population', type=int, help='遗传算法种群大小')
    p.add_argument('--generations', type=int, help='遗传算法迭代次数')
    p.add_argument('--workers', type=int, default=config.OPTIMIZER_MAX_WORKERS, help='并行进程数')
    p.add_argument('--seed', type=int, default=config.OPTIMIZER_SEED, help='随机种子')
    p.add_argument('--time-budget', type=float, default=config.OPTIMIZER_TIME_BUDGET, help='时间预算（秒）')


def _add_walk_forward(p):
    p.add_argument('--train', type=float, default=config.WALK_FORWARD_TRAINING, help='训练窗口')
    p.add_argument('--test', type=float, default=config.WALK_FORWARD_TESTING, help='测试窗口')
    p.add_argument('--step', type=float, help='窗口步长，默认等于测试窗口')
    p.add_argument('--unit', choices=['fraction', 'periods'], default=config.WALK_FORWARD_UNIT)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="回测与参数优化命令行工具")
    subparsers = parser.add_subparsers(dest='command', help='可用命令')

    # backtest
    p_backtest = subparsers.add_parser('backtest', help='运行回测')
    _add_common(p_backtest)
    _add_strategy(p_backtest)

    # optimize
    p_optimize = subparsers.add_parser('optimize', help='参数优化')
    _add_common(p_optimize)
    _add_strategy(p_optimize)
    _add_optimization(p_optimize)

    # walk-forward
    p_wf = subparsers.add_parser('walk-forward', help='滚动验证')
    _add_common(p_wf)
    _add_strategy(p_wf)
    _add_optimization(p_wf)
    _add_walk_forward(p_wf)

    # analyze
    p_analyze = subparsers.add_parser('analyze', help='完整分析报告')
    _add_common(p_analyze)
    _add_strategy(p_analyze)
    _add_optimization(p_analyze)
    _add_walk_forward(p_analyze)
    p_analyze.add_argument('--walk-forward', action='store_true', help='包含滚动验证')

    # export-data
    p_export = subparsers.add_parser('export-data', help='导出K线数据')
    _add_common(p_export)

    args = parser.parse_args(argv)

    commands = {
        'backtest': cmd_backtest,
        'optimize': cmd_optimize,
        'walk-forward': cmd_walk_forward,
        'analyze': cmd_analyze,
        'export-data': cmd_export_data,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        commands[args.command](args)
    except BacktestError as e:
        logger.error(f"❌ {e.error_code.value}: {e}")
        return 2
    except ValueError as e:
        logger.error(f"❌ {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
