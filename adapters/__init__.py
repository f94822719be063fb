"""
adapters — Platform integrations that act on assets.

Each platform implements the four remediation operations of
adapters.platform.PlatformCapability and reports failures as PlatformError.
Adapters never touch workflow models; the dispatcher records outcomes.
"""
