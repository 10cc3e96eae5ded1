#!/usr/bin/env python3
"""
Command line entry point for shardcache.

Both commands run against in-memory shard nodes and bus, so they need no
infrastructure:

- ``shardcache rebalance``: how many keys move when a node joins the ring
- ``shardcache stampede``: many concurrent callers on one cold key
"""

import asyncio
import math
import sys
from typing import Any

import click
import orjson
from rich.console import Console
from rich.table import Table

from shardcache.core.config import ShardCacheSettings
from shardcache.core.coordinator import MultiLevelCache
from shardcache.core.invalidation_bus import MemoryInvalidationHub
from shardcache.core.logging import configure_logging
from shardcache.core.shard_router import ShardRouter
from shardcache.core.shard_store import MemoryShardCluster
from shardcache.core.statistics import CacheStats
from shardcache.datastructures.shard_map import DEFAULT_VIRTUAL_NODES, ShardMap

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """shardcache simulation and inspection tools."""
    configure_logging("DEBUG" if verbose else "WARNING", process_id="cli")
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def remap_report(
    nodes: int, keys: int, virtual_nodes: int, new_node: str
) -> dict[str, Any]:
    """Compare key ownership before and after `new_node` joins `nodes` members."""
    before = ShardMap.build(
        [f"node-{i}" for i in range(nodes)], virtual_nodes_per_member=virtual_nodes
    )
    after = before.with_members(before.members | {new_node})
    moved = 0
    moved_elsewhere = 0
    for i in range(keys):
        key = f"key:{i}".encode()
        old_owner, new_owner = before.owner(key), after.owner(key)
        if old_owner != new_owner:
            moved += 1
            if new_owner != new_node:
                moved_elsewhere += 1
    bound = math.ceil(keys / (nodes + 1))
    return {
        "nodes_before": nodes,
        "nodes_after": nodes + 1,
        "keys": keys,
        "virtual_nodes": virtual_nodes,
        "moved": moved,
        "moved_fraction": moved / keys if keys else 0.0,
        "expected_bound": bound,
        "moved_to_other_nodes": moved_elsewhere,
        "new_node_share": after.ownership_share().get(new_node, 0.0),
    }


@cli.command()
@click.option("--nodes", "-n", default=4, show_default=True, type=click.IntRange(1))
@click.option("--keys", "-k", default=10_000, show_default=True, type=click.IntRange(1))
@click.option(
    "--virtual-nodes",
    default=DEFAULT_VIRTUAL_NODES,
    show_default=True,
    type=click.IntRange(1, 1024),
)
@click.option("--new-node", default="node-new", show_default=True)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
def rebalance(
    nodes: int, keys: int, virtual_nodes: int, new_node: str, output: str
) -> None:
    """Simulate one node joining the ring and report remapped keys."""
    report = remap_report(nodes, keys, virtual_nodes, new_node)

    if output == "json":
        console.print(orjson.dumps(report, option=orjson.OPT_INDENT_2).decode())
        return

    table = Table(title="Ring rebalance")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Nodes", f"{report['nodes_before']} -> {report['nodes_after']}")
    table.add_row("Keys sampled", str(report["keys"]))
    table.add_row("Virtual nodes per member", str(report["virtual_nodes"]))
    table.add_row("Keys moved", str(report["moved"]))
    table.add_row("Moved fraction", f"{report['moved_fraction']:.2%}")
    table.add_row("ceil(K/(N+1))", str(report["expected_bound"]))
    table.add_row("Moved between old nodes", str(report["moved_to_other_nodes"]))
    table.add_row("New node ring share", f"{report['new_node_share']:.2%}")
    console.print(table)

    if report["moved_to_other_nodes"]:
        console.print("[red]Keys moved between existing nodes[/red]")
    elif report["moved"] <= report["expected_bound"]:
        console.print("[green]Remap within the consistent-hashing bound[/green]")
    else:
        console.print(
            "[yellow]Remap above ceil(K/(N+1)); variance from hashing[/yellow]"
        )


async def run_stampede(
    processes: int,
    callers: int,
    key: str,
    loader_delay: float,
    settings: ShardCacheSettings,
) -> tuple[int, list[CacheStats], set[str]]:
    """Fire `callers` concurrent reads of a cold `key` across `processes` caches."""
    cluster = MemoryShardCluster(
        settings.router.members or ["shard-a", "shard-b", "shard-c"]
    )
    hub = MemoryInvalidationHub()
    loads = 0

    async def load(raw_key: bytes) -> dict[str, Any]:
        nonlocal loads
        loads += 1
        await asyncio.sleep(loader_delay)
        return {"key": raw_key.decode(), "payload": "computed"}

    caches = [
        MultiLevelCache(
            router=ShardRouter(
                cluster.nodes,
                virtual_nodes=settings.router.virtual_nodes,
                degraded_cooldown=settings.router.degraded_cooldown,
            ),
            shard_transport=cluster,
            invalidation_transport=hub,
            settings=settings.model_copy(update={"process_id": f"proc-{i}"}),
            loader=load,
        )
        for i in range(processes)
    ]
    for cache in caches:
        await cache.start()
    try:
        results = await asyncio.gather(
            *(caches[i % processes].get(key) for i in range(callers))
        )
        for cache in caches:
            await cache.wait_idle()
        distinct = {orjson.dumps(result).decode() for result in results}
        return loads, [cache.cache_stats() for cache in caches], distinct
    finally:
        for cache in caches:
            await cache.shutdown()


@cli.command()
@click.option("--processes", "-p", default=5, show_default=True, type=click.IntRange(1))
@click.option("--callers", "-c", default=50, show_default=True, type=click.IntRange(1))
@click.option("--key", default="user:42", show_default=True)
@click.option(
    "--loader-delay",
    default=0.05,
    show_default=True,
    type=click.FloatRange(0.0),
    help="Seconds the simulated loader takes",
)
@click.option(
    "--config", type=click.Path(exists=True), help="TOML file with a [shardcache] table"
)
def stampede(
    processes: int,
    callers: int,
    key: str,
    loader_delay: float,
    config: str | None,
) -> None:
    """Run concurrent callers against a cold key and show cache statistics."""
    settings = (
        ShardCacheSettings.from_path(config) if config else ShardCacheSettings()
    )
    loads, stats, distinct = asyncio.run(
        run_stampede(processes, callers, key, loader_delay, settings)
    )

    table = Table(
        title=f"Stampede on {key!r}: {callers} callers, {processes} processes"
    )
    table.add_column("Process", style="cyan", no_wrap=True)
    table.add_column("Requests", justify="right")
    table.add_column("Hit rate", justify="right")
    table.add_column("L2 hits", justify="right")
    table.add_column("Coalesced", justify="right")
    table.add_column("Lease contention", justify="right")
    table.add_column("Loads", justify="right")
    for row in stats:
        table.add_row(
            row.process_id,
            str(row.requests),
            f"{row.hit_rate:.0%}",
            str(row.l2_hits),
            str(row.coalesced_requests),
            str(row.lease_contention),
            str(row.loads),
        )
    console.print(table)

    style = "green" if loads == 1 and len(distinct) == 1 else "red"
    console.print(
        f"[{style}]Loader calls: {loads}; "
        f"distinct values returned: {len(distinct)}[/{style}]"
    )


def main() -> None:
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
