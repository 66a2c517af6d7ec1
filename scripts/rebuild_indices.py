#!/usr/bin/env python3
"""
Rebuild all derived data from the markdown files.

Everything plaintrack keeps besides the markdown files (the in-memory store
and the embedding cache) can be rebuilt from them. This script reloads the
store, reports files that fail to load and cycles in the dependency graph,
prunes orphaned embeddings and, unless --skip-embeddings is given,
regenerates the missing ones.

Usage:
    python scripts/rebuild_indices.py
    python scripts/rebuild_indices.py --root /path/to/.plaintrack
"""

import argparse
import asyncio
from pathlib import Path

from plaintrack.core.config import settings, setup_logging, get_logger
from plaintrack.core.errors import FeatureUnavailableError
from plaintrack.engine.graph import GraphEngine
from plaintrack.storage.embeddings import EmbeddingCache
from plaintrack.storage.store import Store

logger = get_logger("rebuild")


async def rebuild_all(root: Path, skip_embeddings: bool = False) -> dict:
    """Rebuild the store and the embedding cache from the files under root."""
    logger.info(f"Rebuilding from {root}")
    
    results = {
        "records": 0,
        "plans": 0,
        "diagnostics": 0,
        "cycles": 0,
        "pruned": 0,
        "embeddings": 0,
        "errors": [],
    }
    
    store = Store(root)
    
    print("\n📋 Loading records and plans...")
    report = store.rebuild()
    results["records"] = report.records_loaded
    results["plans"] = report.plans_loaded
    results["diagnostics"] = len(report.diagnostics)
    print(f"   ✓ Loaded {report.records_loaded} records and {report.plans_loaded} plans")
    for diagnostic in report.diagnostics:
        print(f"   ⚠ {diagnostic.path}: {diagnostic.message}")
    
    print("\n🔗 Checking dependency graph...")
    cycles = GraphEngine.from_store(store).find_cycles()
    results["cycles"] = len(cycles)
    if cycles:
        for cycle in cycles:
            print(f"   ⚠ Cycle: {cycle}")
    else:
        print("   ✓ No cycles")
    
    cache = EmbeddingCache(store)
    
    print("\n🧹 Pruning orphaned embeddings...")
    results["pruned"] = cache.prune()
    print(f"   ✓ Removed {results['pruned']} entries")
    
    if not skip_embeddings:
        print("\n🧠 Generating embeddings...")
        try:
            results["embeddings"] = await cache.ensure_all()
            print(f"   ✓ Generated {results['embeddings']} embeddings")
        except FeatureUnavailableError as e:
            results["errors"].append(str(e))
            print(f"   ✗ {e}")
    
    return results


def main():
    parser = argparse.ArgumentParser(description="Rebuild derived data from markdown")
    parser.add_argument(
        "--root",
        type=Path,
        default=settings.root_dir,
        help="Path to the repository root",
    )
    parser.add_argument(
        "--skip-embeddings",
        action="store_true",
        help="Only prune the embedding cache, don't generate new embeddings",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output",
    )
    
    args = parser.parse_args()
    
    setup_logging("DEBUG" if args.verbose else "INFO")
    
    print("=" * 50)
    print("plaintrack - Rebuild")
    print("=" * 50)
    print(f"\nRoot: {args.root}")
    
    results = asyncio.run(rebuild_all(args.root, skip_embeddings=args.skip_embeddings))
    
    print("\n" + "=" * 50)
    print("Summary")
    print("=" * 50)
    print(f"Records:           {results['records']}")
    print(f"Plans:             {results['plans']}")
    print(f"Load problems:     {results['diagnostics']}")
    print(f"Dependency cycles: {results['cycles']}")
    print(f"Pruned embeddings: {results['pruned']}")
    print(f"New embeddings:    {results['embeddings']}")
    
    if results["errors"]:
        print(f"\n⚠️  Errors: {len(results['errors'])}")
        for error in results["errors"]:
            print(f"   - {error}")
    else:
        print("\n✅ Rebuild complete!")


if __name__ == "__main__":
    main()
