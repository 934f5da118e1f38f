"""
Main entry point for the SMC backtest engine
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich import box

from smc_config import BacktestConfig, ConfigLoader, get_preset, list_presets
from smc_engine.backtest import BacktestRunner, LoggingProgressSink
from smc_engine.core import DataFrameCandleSource
from smc_engine.persistence import JsonResultStore

logger = logging.getLogger(__name__)
console = Console()


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)]
    )


def print_presets():
    table = Table(title="Strategy presets", box=box.SIMPLE)
    table.add_column("Name", style="cyan")
    table.add_column("Label")
    table.add_column("Strategy")
    for preset in list_presets():
        table.add_row(preset.name.value, preset.label, preset.strategy.value)
    console.print(table)


def print_report(payload: dict):
    """Summary table of a finished run"""
    result = payload['result']
    m = result['metrics']

    table = Table(title=f"{result['symbol']} - {result['strategy']}", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Trades", str(m['total_trades']))
    table.add_row("Win rate", f"{m['win_rate']:.1f}%")
    table.add_row("Total PnL", f"{m['total_pnl']:.2f} ({m['total_pnl_percent']:.2f}%)")
    table.add_row("Profit factor", f"{m['profit_factor']:.2f}")
    table.add_row("Avg win / loss", f"{m['avg_win']:.2f} / {m['avg_loss']:.2f}")
    table.add_row("Avg RR", f"{m['avg_rr']:.2f}")
    table.add_row("Max drawdown", f"{m['max_drawdown']:.2f} ({m['max_drawdown_percent']:.2f}%)")
    table.add_row("Sharpe", f"{m['sharpe_ratio']:.2f}")
    table.add_row("Final balance", f"{m['final_balance']:.2f}")
    table.add_row("Signals", str(len(result['signals'])))
    console.print(table)

    if result['trades']:
        trades = Table(title="Last trades", box=box.SIMPLE)
        for column in ("Entry time", "Dir", "Entry", "Exit", "Reason", "PnL"):
            trades.add_column(column)
        for t in result['trades'][-10:]:
            trades.add_row(
                t['entry_time'], t['direction'], f"{t['entry_price']:.5g}",
                f"{t['exit_price']:.5g}", t['exit_reason'], f"{t['pnl']:.2f}"
            )
        console.print(trades)

    if payload.get('saved_to'):
        console.print(f"Results saved to: {payload['saved_to']}")


def build_config(args) -> BacktestConfig:
    """YAML or default config, then the preset, then explicit flags"""
    config = ConfigLoader(args.config).load() if args.config else BacktestConfig(symbol=args.symbol)
    if args.preset:
        config.params = get_preset(args.preset).apply(config.params)
        config.preset = args.preset
    data = config.to_dict()

    overrides = {
        'strategy': args.strategy,
        'start_date': args.start,
        'end_date': args.end,
        'initial_balance': args.balance,
        'risk_percent': args.risk,
        'confirmation_type': args.confirmation,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.ticks:
        data['use_tick_data'] = True
    if args.kill_zones:
        data['use_kill_zones'] = True
    return BacktestConfig.from_dict(data)


def main():
    """Main function with command line argument parsing"""
    parser = argparse.ArgumentParser(
        description='SMC Backtest Engine - Smart Money Concepts backtesting',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --htf data/xau_4h.csv --mtf data/xau_1h.csv --ltf data/xau_15m.csv --symbol XAUUSD.s
  python main.py --htf h4.csv --mtf h1.csv --ltf m15.csv --preset LIQ_SWEEP_KZ --risk 0.5
  python main.py --config config/backtest.yaml --htf h4.csv --mtf h1.csv --ltf m15.csv
  python main.py --list-presets
        """
    )

    parser.add_argument('--htf', help='Higher timeframe CSV file (e.g., 4h data)')
    parser.add_argument('--mtf', help='Medium timeframe CSV file (e.g., 1h data)')
    parser.add_argument('--ltf', help='Lower timeframe CSV file (e.g., 15m data)')
    parser.add_argument('--ticks', help='Tick CSV (timestamp, bid, ask) for tick-refined exits')
    parser.add_argument('--config', help='YAML backtest configuration')

    parser.add_argument('--symbol', default='XAUUSD.s', help='Symbol (default: XAUUSD.s)')
    parser.add_argument('--preset', help='Strategy preset name, see --list-presets')
    parser.add_argument('--strategy', choices=['ORDER_BLOCK', 'LIQUIDITY_SWEEP', 'BOS'])
    parser.add_argument('--confirmation', choices=['none', 'close', 'strong', 'engulf'])
    parser.add_argument('--start', help='Start date (YYYY-MM-DD)')
    parser.add_argument('--end', help='End date (YYYY-MM-DD)')
    parser.add_argument('--balance', type=float, help='Initial balance (default: 10000)')
    parser.add_argument('--risk', type=float, help='Risk per trade in percent (default: 1.0)')
    parser.add_argument('--kill-zones', action='store_true', help='Only take signals inside kill zones')
    parser.add_argument('--out-dir', default='backtest_results', help='Results directory (default: backtest_results)')
    parser.add_argument('--list-presets', action='store_true', help='Show strategy presets and exit')
    parser.add_argument('-v', '--verbose', action='store_true')

    args = parser.parse_args()
    setup_logging(args.verbose)

    if args.list_presets:
        print_presets()
        return

    if not (args.htf and args.mtf and args.ltf):
        parser.error("--htf, --mtf and --ltf are required")

    for path in (args.htf, args.mtf, args.ltf, args.ticks):
        if path and not Path(path).exists():
            console.print(f"[red]Error: file not found: {path}[/red]")
            sys.exit(1)

    try:
        config = build_config(args)
        source = DataFrameCandleSource.from_csv(
            config.symbol,
            {config.htf_timeframe: args.htf, config.mtf_timeframe: args.mtf, config.ltf_timeframe: args.ltf},
            ticks_path=args.ticks
        )
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    runner = BacktestRunner(source, JsonResultStore(args.out_dir))
    payload = asyncio.run(runner.run(config, LoggingProgressSink()))

    if not payload['success']:
        console.print(f"[red]Backtest failed during {payload['phase']} ({payload['error_type']}): {payload['error']}[/red]")
        sys.exit(1)

    print_report(payload)


if __name__ == "__main__":
    main()
