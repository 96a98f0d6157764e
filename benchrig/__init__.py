"""
benchrig - control plane for a benchmarking rig

Watches a sharded key-value cluster, the worker processes serving the
benchmarked frameworks and the host they run on, and executes the
administrative commands and load tests that drive the rig.

## Architecture

- **core**: gateway, topology cache, aggregators, scheduler, event bus,
  command executor, scaling, history
- **control**: ``ControlPlane``, which wires the core from ``RigSettings``
- **cli**: click commands over the control plane

## Quick Start

```python
from benchrig import ControlPlane, RigSettings

async with ControlPlane(RigSettings()) as plane:
    plane.subscribe("cluster", lambda stream, snapshot: print(snapshot.describe()))
    result = await plane.run_benchmark("fastify", endpoint="/")
```
"""

from .config import RigSettings
from .control import ControlPlane

__version__ = "0.1.0"

__all__ = ["ControlPlane", "RigSettings", "__version__"]
