import os

# Keep tests free of exporters and auto-instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")
