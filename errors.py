# Base class for everything the monitor raises on purpose
class MonitorError(Exception):
    pass

# The run configuration is malformed or out of range. Fatal at startup.
class ConfigError(MonitorError):
    pass

# The target address could not be resolved. Fatal at startup.
class ResolutionError(MonitorError):
    pass

# A single probe could not be sent. Recorded as a failed sample, never fatal.
class ProbeError(MonitorError):
    pass

# The sample log could not be written. Fatal, as a gap would corrupt the time series.
class LogWriteError(MonitorError):
    pass

# A reply wait was abandoned because the monitor was asked to stop
class ProbeCancelled(MonitorError):
    pass
