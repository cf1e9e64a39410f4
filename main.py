"""BrandPulse - multi-market brand analysis

Simple CLI for running an analysis from a JSON config file.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from brandpulse.providers.pair import ProviderCredentials
from brandpulse.services import database
from brandpulse.services.analysis import AnalysisRunner, new_report_id
from brandpulse.services.progress import ProgressBroker


async def print_progress(subscription) -> None:
    async for event in subscription:
        if event.type.value == "status":
            print(f"[*] {event.message}")
        elif event.type.value == "progress":
            counts = event.counts
            if counts:
                print(
                    f"  [{event.progress:3d}%] {event.message} "
                    f"(gemini ok {counts.get('gemini_ok', 0)}, openai ok {counts.get('openai_ok', 0)})"
                )
            else:
                print(f"\n[~] {event.progress:3d}% {event.message}")
        elif event.type.value == "complete":
            print(f"\n[*] {event.message}")
            print(f"   Runtime: {event.data.get('execution_time')}s")
            print(f"   Questions answered: {event.data.get('answered')}/{event.data.get('questions')}")
        elif event.type.value == "error":
            print(f"\n[!] Error: {event.message}")


async def run(config_path: Path, report_id: str, resume: bool, batch_size: int | None, output: Path | None) -> int:
    config = json.loads(config_path.read_text(encoding="utf-8"))
    broker = ProgressBroker()
    runner = AnalysisRunner(progress_broker=broker, batch_size=batch_size)

    print(f"Report: {report_id}")
    print("-" * 50)

    subscription = broker.subscribe(report_id)
    printer = asyncio.create_task(print_progress(subscription))
    try:
        if resume:
            aggregates = await runner.resume(report_id, config)
        else:
            aggregates = await runner.run(report_id, config, ProviderCredentials.from_settings())
        await printer
    finally:
        subscription.close()
        await database.close_pool()

    if aggregates is None:
        return 1

    payload = {code: aggregate.to_dict() for code, aggregate in aggregates.items()}
    if output:
        output.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        print(f"\nAggregates written to {output}")
    else:
        print(json.dumps(payload, indent=2, default=str))
    return 0


def main():
    parser = argparse.ArgumentParser(description="BrandPulse multi-market analysis")
    parser.add_argument("--config", "-c", required=True, type=Path, help="Analysis config (JSON)")
    parser.add_argument("--report-id", "-r", help="Report id (default: new UUID)")
    parser.add_argument("--resume", action="store_true", help="Rebuild aggregates from saved responses")
    parser.add_argument("--batch-size", "-b", type=int, help="Questions per batch (default: from config)")
    parser.add_argument("--output", "-o", type=Path, help="Write aggregates to this file")

    args = parser.parse_args()
    if args.resume and not args.report_id:
        parser.error("--resume requires --report-id")

    report_id = args.report_id or new_report_id()
    sys.exit(asyncio.run(run(args.config, report_id, args.resume, args.batch_size, args.output)))


if __name__ == "__main__":
    main()
