# Default settings for resgraph
# Overridden by resgraph.yml (see planner/config_loader.py)

# Concurrent backend calls per batch
MAX_WORKERS = 4

# Where apply/destroy keep node state between runs
STATE_FILE = "resgraph.state.json"

# Prefix of generated EdgeResource ids: <prefix>.<owner>.<attribute>
EDGE_PREFIX = "edge"

# Default file format for the draw command
OUTPUT_FORMAT = "png"
SUPPORTED_OUTPUT_FORMATS = ["png", "svg", "pdf", "bmp", "dot"]

# Local cache for declarations cloned from git sources
CACHE_DIR = "~/.resgraph/source_cache"

LOG_LEVEL = "WARNING"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Config file names searched in the current directory
CONFIG_FILENAMES = ["resgraph.yml", "resgraph.yaml"]

# Environment overrides: variable -> setting
ENV_OVERRIDES = {
    "RESGRAPH_MAX_WORKERS": "max_workers",
    "RESGRAPH_STATE_FILE": "state_file",
}

# Declaration file extensions by parser
HCL_EXTENSIONS = [".hcl"]
YAML_EXTENSIONS = [".yml", ".yaml"]
JSON_EXTENSIONS = [".json"]

# Rendering styles per node kind (graphviz attributes)
NODE_STYLES = {
    "Resource": {"shape": "box", "style": "rounded,filled", "fillcolor": "#E8F1FB"},
    "EdgeResource": {"shape": "box", "style": "dashed", "color": "#C0392B"},
}
BATCH_CLUSTER_STYLE = {"style": "rounded", "color": "#7F8C8D", "fontname": "Sans-Serif"}
