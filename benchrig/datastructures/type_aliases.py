"""
Semantic type aliases for benchrig.

These aliases replace raw str/int/float annotations with names that say what
a value means, so signatures across the control plane read on their own.
"""

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float
type DurationMilliseconds = float

# Cluster topology types
type HostAddress = str
type PortNumber = int
type NodeAddress = str  # "host:port"
type PortRange = tuple[PortNumber, PortNumber]

# Process and command types
type CommandString = str
type CommandLabel = str
type ExitCode = int
type ByteSize = int
type FrameworkName = str
type InstanceCount = int

# Telemetry types
type StreamName = str
type SubscriptionId = int
type ConnectionId = str
type Percentage = float
type OpsPerSecond = int

# Benchmark types
type EndpointPath = str
type HttpMethod = str
type BenchmarkKey = tuple[FrameworkName, EndpointPath, HttpMethod]
type LatencyMs = float
type RequestsPerSecond = int
