"""
Command line entry point: gather intelligence (and optionally synthesize
scenarios) for one symbol and print the result as JSON.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from stockintel.config import DEFAULT_CONFIG_PATH, load_config, validate_config
from stockintel.errors import ProviderError, SynthesisError
from stockintel.logging_utils import setup_logging_from_config
from stockintel.models import GatherContext
from stockintel.pipeline import AnalysisPipeline


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-source stock intelligence")
    parser.add_argument('symbol', help="Ticker symbol, e.g. AAPL")
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help="Path to config YAML")
    parser.add_argument('--company', help="Company name passed to the sources")
    parser.add_argument('--quick', action='store_true', help="Technical analysis only")
    parser.add_argument('--synthesize', action='store_true', help="Also generate bull/bear/base scenarios")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, config: Dict[str, Any]) -> Dict[str, Any]:
    pipeline = AnalysisPipeline(config)
    ctx = GatherContext(company_name=args.company)

    if args.quick:
        try:
            prices = await pipeline.market_data.get_daily_bars(args.symbol)
        except ProviderError as e:
            logger.warning(f"No price history for quick analysis: {e}")
            prices = None
        ctx = GatherContext(company_name=args.company, price_data=prices)
        bundle = await pipeline.gather(args.symbol, ctx, quick=True)
        return {'intelligence': bundle.to_dict()}

    if args.synthesize:
        bundle, result, instructions = await pipeline.analyze(args.symbol, ctx)
        output = {'intelligence': bundle.to_dict(), 'synthesis': result.to_dict()}
        if instructions is not None:
            output['orchestration'] = instructions.to_dict()
        return output

    bundle = await pipeline.gather(args.symbol, ctx)
    return {'intelligence': bundle.to_dict()}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    config_path = args.config if Path(args.config).exists() else None
    config = load_config(config_path)
    validate_config(config)
    setup_logging_from_config(config)

    if config_path is None:
        logger.warning(f"Config {args.config} not found, using built-in defaults")

    try:
        output = asyncio.run(run(args, config))
    except SynthesisError as e:
        logger.error(f"Synthesis failed: {e}")
        print(json.dumps({'error': type(e).__name__, 'message': str(e)}, indent=2))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
