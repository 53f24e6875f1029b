"""
Backtest Engine - Core backtesting logic

Replays candles in ascending timestamp order through a strategy. All mutable
per-run state lives in a SimulationContext owned by a single run.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

from backtest.domain.candles import ensure_candles
from backtest.domain.errors import ErrorCode, SimulationError
from backtest.domain.interfaces import Strategy
from backtest.domain.models import (
    BacktestResult, Candle, DrawdownPoint, EngineState, EquityPoint, ExitReason,
    MonthlyReturn, Position, PositionSide, Signal, SignalAction, Trade,
)
from config.validator import BacktestConfig
from logger_utils import get_logger

logger = get_logger("backtest")

# 仓位上限比较时的相对容差
_SIZE_TOLERANCE = 1e-9


@dataclass
class SimulationContext:
    """单次回测独占的可变状态"""
    initial_balance: float
    cash: float
    state: EngineState = EngineState.IDLE
    positions: Dict[int, Position] = field(default_factory=dict)
    next_position_id: int = 1
    next_trade_id: int = 1
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    drawdown_curve: List[DrawdownPoint] = field(default_factory=list)
    peak_equity: float = 0.0
    trough_equity: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_amount: float = 0.0
    max_runup: float = 0.0
    max_runup_percent: float = 0.0
    total_commission: float = 0.0
    total_slippage: float = 0.0
    last_trade_timestamp: Optional[int] = None
    last_candle: Optional[Candle] = None
    first_timestamp: Optional[int] = None
    processed_candles: int = 0
    skipped_candles: int = 0
    strategy_errors: List[Tuple[int, str]] = field(default_factory=list)
    rejected_signals: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def create(cls, initial_balance: float) -> "SimulationContext":
        return cls(
            initial_balance=initial_balance,
            cash=initial_balance,
            peak_equity=initial_balance,
            trough_equity=initial_balance,
        )

    def equity(self, price: float) -> float:
        """现金 + 持仓市值"""
        return self.cash + sum(p.market_value(price) for p in self.positions.values())

    def market_context(self, candle: Candle) -> Dict[str, Any]:
        """交给策略的只读快照"""
        return {
            'timestamp': candle.timestamp,
            'index': self.processed_candles - 1,
            'balance': self.cash,
            'equity': self.equity(candle.close),
            'open_positions': [
                {'id': p.id, 'side': p.side.value, 'amount': p.amount, 'entry_price': p.entry_price}
                for p in self.positions.values()
            ],
        }


class SimulationEngine:
    """Core backtesting engine"""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def run(
        self,
        candles: Union[Sequence[Candle], pd.DataFrame],
        strategy: Strategy,
        config: BacktestConfig,
        context: Optional[SimulationContext] = None
    ) -> BacktestResult:
        """
        Run backtest on historical data

        Args:
            candles: Candles in ascending timestamp order (or an OHLCV DataFrame)
            strategy: Object implementing update_market_data / generate_signal
            config: Backtest configuration
            context: Optional pre-built context, inspectable after the run

        Returns:
            BacktestResult
        """
        candles = ensure_candles(candles)
        ctx = context or SimulationContext.create(config.initial_balance)
        log = logger.info if self.verbose else logger.debug

        log(f"开始回测: {len(candles)} 根K线, 初始资金 {config.initial_balance}")
        ctx.state = EngineState.RUNNING

        for candle in candles:
            if not self._accept_candle(candle, ctx):
                continue
            self._process_tick(candle, strategy, config, ctx)

        # 回测结束，强制平仓
        ctx.state = EngineState.FLUSHING
        if ctx.last_candle is not None and ctx.positions:
            for position_id in list(ctx.positions):
                self._close_position(
                    ctx, position_id, ctx.last_candle.close, ctx.last_candle.timestamp,
                    ExitReason.END_OF_BACKTEST, config
                )
            # 最后一个权益点计入平仓手续费与滑点
            self._restate_final_equity(ctx)

        ctx.state = EngineState.DONE
        result = self._build_result(ctx)

        if ctx.skipped_candles:
            logger.warning(f"跳过无效K线 {ctx.skipped_candles} 根")
        log(
            f"回测完成: 交易 {result.total_trades} 笔, 收益率 {result.total_return_percent:.2f}%, "
            f"最大回撤 {result.max_drawdown_percent:.2f}%"
        )
        return result

    def _accept_candle(self, candle: Candle, ctx: SimulationContext) -> bool:
        """无效或时间不递增的K线跳过并计数"""
        if not candle.is_valid():
            ctx.skipped_candles += 1
            logger.debug(f"无效K线已跳过: {candle}")
            return False
        if ctx.last_candle is not None and candle.timestamp <= ctx.last_candle.timestamp:
            ctx.skipped_candles += 1
            logger.debug(f"时间戳未递增的K线已跳过: {candle.timestamp}")
            return False
        return True

    def _process_tick(
        self,
        candle: Candle,
        strategy: Strategy,
        config: BacktestConfig,
        ctx: SimulationContext
    ):
        ctx.processed_candles += 1
        if ctx.first_timestamp is None:
            ctx.first_timestamp = candle.timestamp

        signal = self._get_signal(strategy, candle, ctx)

        # 止损止盈优先于新信号
        self._check_exits(candle, config, ctx)

        # 反向信号平掉对向持仓
        if signal is not None and signal.is_entry:
            opposite = PositionSide.SHORT if signal.action == SignalAction.BUY else PositionSide.LONG
            for position_id in [pid for pid, p in ctx.positions.items() if p.side == opposite]:
                self._close_position(ctx, position_id, candle.close, candle.timestamp, ExitReason.SIGNAL, config)

        self._record_equity(candle, ctx)

        if signal is not None and signal.is_entry:
            self._try_open(signal, candle, config, ctx)

        ctx.last_candle = candle

    def _get_signal(self, strategy: Strategy, candle: Candle, ctx: SimulationContext) -> Optional[Signal]:
        """策略异常只影响当前tick"""
        try:
            strategy.update_market_data(candle)
            return strategy.generate_signal(candle, ctx.market_context(candle))
        except Exception as e:
            ctx.strategy_errors.append((candle.timestamp, f"{type(e).__name__}: {e}"))
            logger.warning(f"策略异常，跳过该K线 {candle.timestamp}: {e}")
            return None

    def _check_exits(self, candle: Candle, config: BacktestConfig, ctx: SimulationContext):
        """检查止损止盈（按成交价即收盘价）"""
        price = candle.close
        for position_id, position in list(ctx.positions.items()):
            reason = None
            if position.side == PositionSide.LONG:
                if position.stop_loss is not None and price <= position.stop_loss:
                    reason = ExitReason.STOP_LOSS
                elif position.take_profit is not None and price >= position.take_profit:
                    reason = ExitReason.TAKE_PROFIT
            else:
                if position.stop_loss is not None and price >= position.stop_loss:
                    reason = ExitReason.STOP_LOSS
                elif position.take_profit is not None and price <= position.take_profit:
                    reason = ExitReason.TAKE_PROFIT

            if reason is not None:
                self._close_position(ctx, position_id, price, candle.timestamp, reason, config)

    def _reject(self, ctx: SimulationContext, code: ErrorCode, message: str, candle: Candle):
        """拒单只记录，不抛出"""
        error = SimulationError(code, message, {'timestamp': candle.timestamp})
        ctx.rejected_signals[code.value] = ctx.rejected_signals.get(code.value, 0) + 1
        logger.debug(f"信号被拒绝 [{error.error_code.value}]: {error.message}")

    def _try_open(self, signal: Signal, candle: Candle, config: BacktestConfig, ctx: SimulationContext):
        """开仓（风控检查不通过则拒绝）"""
        side = PositionSide.LONG if signal.action == SignalAction.BUY else PositionSide.SHORT

        # 不允许开空时卖出信号只用于平多
        if side == PositionSide.SHORT and not config.allow_short:
            return

        if len(ctx.positions) >= config.max_concurrent_trades:
            self._reject(ctx, ErrorCode.MAX_CONCURRENT_TRADES, f"持仓数已达上限 {config.max_concurrent_trades}", candle)
            return

        if (ctx.last_trade_timestamp is not None
                and candle.timestamp - ctx.last_trade_timestamp < config.min_trade_interval_ms):
            self._reject(ctx, ErrorCode.MIN_TRADE_INTERVAL, "距上次开仓时间过短", candle)
            return

        # 滑点：买入抬高、卖出压低成交价
        price = candle.close
        if side == PositionSide.LONG:
            fill_price = price * (1 + config.slippage)
        else:
            fill_price = price * (1 - config.slippage)

        if signal.amount > 0:
            amount = signal.amount
        else:
            amount = config.max_position_size * ctx.cash / (fill_price * (1 + config.commission))

        if not math.isfinite(amount) or amount <= 0:
            self._reject(ctx, ErrorCode.INVALID_AMOUNT, f"下单数量无效: {amount}", candle)
            return

        notional = fill_price * amount
        commission = notional * config.commission

        if notional + commission > ctx.cash * (1 + _SIZE_TOLERANCE):
            self._reject(ctx, ErrorCode.INSUFFICIENT_BALANCE, f"余额不足: 需要 {notional + commission:.2f}", candle)
            return

        if notional > config.max_position_size * ctx.cash * (1 + _SIZE_TOLERANCE):
            self._reject(ctx, ErrorCode.MAX_POSITION_SIZE, f"超过单笔仓位上限 {config.max_position_size:.2%}", candle)
            return

        stop_loss, take_profit = self._exit_levels(side, fill_price, signal, config)

        position = Position(
            id=ctx.next_position_id,
            side=side,
            amount=amount,
            entry_price=fill_price,
            entry_timestamp=candle.timestamp,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_commission=commission,
            entry_slippage=abs(fill_price - price) * amount,
            order_ref=signal.reason or None,
        )
        ctx.positions[position.id] = position
        ctx.next_position_id += 1
        ctx.cash = max(0.0, ctx.cash - notional - commission)
        ctx.total_commission += commission
        ctx.total_slippage += position.entry_slippage
        ctx.last_trade_timestamp = candle.timestamp

        logger.debug(f"开仓 #{position.id} {side.value} {amount:.6f} @ {fill_price:.2f}")

    @staticmethod
    def _exit_levels(
        side: PositionSide,
        entry_price: float,
        signal: Signal,
        config: BacktestConfig
    ) -> Tuple[Optional[float], Optional[float]]:
        """止损止盈价：信号给出的动态价格优先，否则按配置比例"""
        stop_loss = signal.stop_loss
        take_profit = signal.take_profit
        if side == PositionSide.LONG:
            if stop_loss is None and config.stop_loss_percent > 0:
                stop_loss = entry_price * (1 - config.stop_loss_percent)
            if take_profit is None and config.take_profit_percent > 0:
                take_profit = entry_price * (1 + config.take_profit_percent)
        else:
            if stop_loss is None and config.stop_loss_percent > 0:
                stop_loss = entry_price * (1 + config.stop_loss_percent)
            if take_profit is None and config.take_profit_percent > 0:
                take_profit = max(0.0, entry_price * (1 - config.take_profit_percent))
        return stop_loss, take_profit

    def _close_position(
        self,
        ctx: SimulationContext,
        position_id: int,
        price: float,
        timestamp: int,
        reason: ExitReason,
        config: BacktestConfig
    ):
        """平仓并记录交易"""
        position = ctx.positions.pop(position_id)

        if position.side == PositionSide.LONG:
            exit_price = price * (1 - config.slippage)
        else:
            exit_price = price * (1 + config.slippage)

        commission = exit_price * position.amount * config.commission
        slippage = abs(exit_price - price) * position.amount
        cost_basis = position.entry_price * position.amount

        if position.side == PositionSide.LONG:
            proceeds = exit_price * position.amount - commission
        else:
            # 空头亏损以保证金为限
            proceeds = max(0.0, cost_basis + (position.entry_price - exit_price) * position.amount - commission)

        ctx.cash += proceeds
        ctx.total_commission += commission
        ctx.total_slippage += slippage

        pnl = proceeds - cost_basis - position.entry_commission
        trade = Trade(
            id=ctx.next_trade_id,
            position_id=position.id,
            side=position.side,
            entry_timestamp=position.entry_timestamp,
            exit_timestamp=timestamp,
            entry_price=position.entry_price,
            exit_price=exit_price,
            amount=position.amount,
            commission=position.entry_commission + commission,
            slippage=position.entry_slippage + slippage,
            pnl=pnl,
            pnl_percent=pnl / cost_basis * 100 if cost_basis > 0 else 0.0,
            holding_period=timestamp - position.entry_timestamp,
            exit_reason=reason,
            order_ref=position.order_ref,
        )
        ctx.trades.append(trade)
        ctx.next_trade_id += 1

        logger.debug(f"平仓 #{position.id} {reason.value} @ {exit_price:.2f}, 盈亏 {pnl:+.2f}")

    def _restate_final_equity(self, ctx: SimulationContext):
        """强制平仓后用实际现金重写最后一个权益点，峰值与回撤统计按剩余曲线重算"""
        ctx.equity_curve.pop()
        ctx.drawdown_curve.pop()

        ctx.peak_equity = ctx.trough_equity = ctx.initial_balance
        ctx.max_drawdown = ctx.max_drawdown_amount = 0.0
        ctx.max_runup = ctx.max_runup_percent = 0.0
        for point in ctx.equity_curve:
            self._update_extremes(point.equity, ctx)

        self._record_equity(ctx.last_candle, ctx)

    def _update_extremes(self, equity: float, ctx: SimulationContext) -> Tuple[float, float]:
        """更新峰值、回撤与最大涨幅，返回 (回撤比例, 回撤金额)"""
        ctx.peak_equity = max(ctx.peak_equity, equity)
        drawdown_amount = max(0.0, ctx.peak_equity - equity)
        drawdown = drawdown_amount / ctx.peak_equity if ctx.peak_equity > 0 else 0.0
        ctx.max_drawdown = max(ctx.max_drawdown, drawdown)
        ctx.max_drawdown_amount = max(ctx.max_drawdown_amount, drawdown_amount)

        ctx.trough_equity = min(ctx.trough_equity, equity)
        runup = equity - ctx.trough_equity
        if runup > ctx.max_runup:
            ctx.max_runup = runup
            ctx.max_runup_percent = runup / ctx.trough_equity * 100 if ctx.trough_equity > 0 else 0.0
        return drawdown, drawdown_amount

    def _record_equity(self, candle: Candle, ctx: SimulationContext):
        """记录权益并更新峰值、回撤"""
        equity = ctx.equity(candle.close)
        drawdown, drawdown_amount = self._update_extremes(equity, ctx)

        ctx.equity_curve.append(EquityPoint(
            timestamp=candle.timestamp,
            equity=equity,
            balance=ctx.cash,
            drawdown=drawdown,
            drawdown_percent=drawdown * 100,
        ))
        ctx.drawdown_curve.append(DrawdownPoint(
            timestamp=candle.timestamp,
            drawdown=drawdown_amount,
            drawdown_percent=drawdown * 100,
            underwater=-drawdown * 100,
        ))

    def _build_result(self, ctx: SimulationContext) -> BacktestResult:
        """汇总回测结果"""
        initial = ctx.initial_balance
        final = ctx.cash
        trades = ctx.trades

        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [t.pnl for t in trades if t.pnl <= 0]
        gross_profit = sum(wins)
        gross_loss = abs(sum(losses))
        total_trades = len(trades)

        total_pnl = final - initial
        total_return = total_pnl / initial if initial > 0 else 0.0
        max_drawdown_percent = ctx.max_drawdown * 100

        return BacktestResult(
            initial_balance=initial,
            final_balance=final,
            trades=list(trades),
            equity_curve=list(ctx.equity_curve),
            drawdown_curve=list(ctx.drawdown_curve),
            monthly_returns=monthly_returns(ctx.equity_curve, initial),
            total_pnl=total_pnl,
            total_return=total_return,
            total_return_percent=total_return * 100,
            total_commission=ctx.total_commission,
            total_slippage=ctx.total_slippage,
            max_drawdown=ctx.max_drawdown,
            max_drawdown_percent=max_drawdown_percent,
            max_drawdown_amount=ctx.max_drawdown_amount,
            max_runup=ctx.max_runup,
            max_runup_percent=ctx.max_runup_percent,
            total_trades=total_trades,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / total_trades if total_trades else 0.0,
            profit_factor=gross_profit / gross_loss if gross_loss > 0 else 0.0,
            average_win=gross_profit / len(wins) if wins else 0.0,
            average_loss=gross_loss / len(losses) if losses else 0.0,
            largest_win=max(wins) if wins else 0.0,
            largest_loss=min(losses) if losses else 0.0,
            average_holding_period=(
                sum(t.holding_period for t in trades) / total_trades if total_trades else 0.0
            ),
            expectancy=sum(t.pnl for t in trades) / total_trades if total_trades else 0.0,
            calmar_ratio=(
                total_return * 100 / max_drawdown_percent if max_drawdown_percent > 0 else 0.0
            ),
            recovery_factor=(
                total_pnl / ctx.max_drawdown_amount if ctx.max_drawdown_amount > 0 else 0.0
            ),
            start_timestamp=ctx.first_timestamp,
            end_timestamp=ctx.last_candle.timestamp if ctx.last_candle else None,
            processed_candles=ctx.processed_candles,
            skipped_candles=ctx.skipped_candles,
            strategy_errors=list(ctx.strategy_errors),
            rejected_signals=dict(ctx.rejected_signals),
        )


def monthly_returns(equity_curve: Sequence[EquityPoint], initial_balance: float) -> List[MonthlyReturn]:
    """按UTC自然月统计收益，基数为上月末权益（首月为初始资金）"""
    month_end: Dict[Tuple[int, int], float] = {}
    for point in equity_curve:
        dt = datetime.fromtimestamp(point.timestamp / 1000, tz=timezone.utc)
        month_end[(dt.year, dt.month)] = point.equity

    results = []
    base = initial_balance
    for (year, month), end_equity in month_end.items():
        ret = (end_equity - base) / base if base > 0 else 0.0
        results.append(MonthlyReturn(year, month, ret, ret * 100))
        base = end_equity
    return results


def run_backtest(
    candles: Union[Sequence[Candle], pd.DataFrame],
    strategy: Strategy,
    config: BacktestConfig,
    verbose: bool = False
) -> BacktestResult:
    """便捷入口"""
    return SimulationEngine(verbose=verbose).run(candles, strategy, config)
