"""
Content Pipeline Errors
Exception taxonomy shared by the merge engine, render queue and routes
"""


class ContentPipelineError(Exception):
    """Base exception for content pipeline operations"""
    status_code = 500


# ============================================================================
# CONFIGURATION ERRORS - rejected before any state is touched
# ============================================================================

class ConfigurationError(ContentPipelineError):
    """Invalid or incomplete configuration"""
    status_code = 422


class UnknownMergeStrategyError(ConfigurationError):
    """Merge strategy name is not one of default, deep_merge, stream"""

    def __init__(self, strategy):
        self.strategy = strategy
        super().__init__(f"unsupported merge strategy: {strategy}")


class InstanceNeedsReconfigurationError(ConfigurationError):
    """Plugin instance is out of date with its definition schema"""

    def __init__(self, instance_id):
        self.instance_id = instance_id
        super().__init__(f"plugin instance {instance_id} requires reconfiguration")


# ============================================================================
# DATA ERRORS
# ============================================================================

class DataFormatError(ContentPipelineError):
    """Inbound payload is malformed"""
    status_code = 400


# ============================================================================
# TRANSIENT ERRORS - retried with backoff
# ============================================================================

class TransientRenderError(ContentPipelineError):
    """Rendering failed in a way that may succeed on retry"""
    status_code = 503


class RenderTimeoutError(TransientRenderError):
    """Rendering service did not answer within the job timeout"""


class RenderServiceError(TransientRenderError):
    """Rendering service answered with an error"""


class RenderPoolBusyError(TransientRenderError):
    """Every render thread is still tied up in an earlier call"""

    def __init__(self, pool_name, size):
        self.pool_name = pool_name
        super().__init__(f"all {size} {pool_name} threads are busy")


# ============================================================================
# CONSISTENCY ERRORS - the target went away or changed state
# ============================================================================

class ConsistencyError(ContentPipelineError):
    """Referenced record is missing or in the wrong state"""
    status_code = 409


class InstanceNotFoundError(ConsistencyError):
    status_code = 404

    def __init__(self, instance_id):
        self.instance_id = instance_id
        super().__init__(f"plugin instance {instance_id} not found")


class InstanceInactiveError(ConsistencyError):

    def __init__(self, instance_id):
        self.instance_id = instance_id
        super().__init__(f"plugin instance {instance_id} is not active")

