"""
Default configuration values for specflow.

Provides fallback values and the environment variable overrides applied on
top of every project configuration.
"""

from typing import Any, Dict

DEFAULT_SETTINGS = {
    'paths': {
        'documents_dir': 'docs/specs',
        'state_dir': '.specflow/state',
        'backups_dir': '.specflow/backups'
    },
    'watcher': {
        'debounce_ms': 500,
        'include_patterns': ['*.md', '*.json'],
        'exclude_patterns': [
            '*.tmp', '*~', '*.swp', '*/.git/*', '*/node_modules/*',
            '*/.specflow/backups/*', '*/audit.json', '*/conflicts.json'
        ],
        'root_check_interval_s': 5.0
    },
    'router': {
        'failure_threshold': 3,
        'max_backlog': 256,
        'dead_letter_size': 100,
        'circuit_reset_s': 30.0,
        'backpressure_timeout_s': 1.0
    },
    'consistency': {
        'auto_repair_threshold': 0.6,
        'category_weight': 0.7,
        'recency_weight': 0.3,
        'simple_score': 1.0,
        'structural_score': 0.2,
        'recency_horizon_s': 300.0
    },
    'arbiter': {
        'recency_tolerance_s': 5.0,
        'precedence_rules': {'status': ['complete', 'done']},
        'backup_retention_days': 7
    },
    'scheduler': {
        'priority_weights': {'P0': 1000.0, 'P1': 100.0, 'P2': 10.0, 'P3': 1.0},
        'exact_match_boost': 2.0,
        'phase_boost': 1.5,
        'active_spec_boost': 1.3,
        'large_task_hours': 8.0,
        'large_task_penalty': 0.8,
        'capacity_limit': 1,
        'stale_handoff_hours': 24.0,
        'agent_capabilities': {}
    },
    'project': {
        'version': '1.0.0'
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    }
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    'SPECFLOW_DOCUMENTS_DIR': 'paths.documents_dir',
    'SPECFLOW_STATE_DIR': 'paths.state_dir',
    'SPECFLOW_BACKUPS_DIR': 'paths.backups_dir',
    'SPECFLOW_DEBOUNCE_MS': 'watcher.debounce_ms',
    'SPECFLOW_EXCLUDE_PATTERNS': 'watcher.exclude_patterns',
    'SPECFLOW_FAILURE_THRESHOLD': 'router.failure_threshold',
    'SPECFLOW_MAX_BACKLOG': 'router.max_backlog',
    'SPECFLOW_AUTO_REPAIR_THRESHOLD': 'consistency.auto_repair_threshold',
    'SPECFLOW_RECENCY_TOLERANCE_S': 'arbiter.recency_tolerance_s',
    'SPECFLOW_BACKUP_RETENTION_DAYS': 'arbiter.backup_retention_days',
    'SPECFLOW_CAPACITY_LIMIT': 'scheduler.capacity_limit'
}

# Variables holding comma-separated lists
LIST_ENV_VARS = {'SPECFLOW_EXCLUDE_PATTERNS'}


def get_default_project_config() -> Dict[str, Any]:
    """Get default project configuration template"""
    return {
        'name': '${project_name}',
        'path': '${project_path}',
        'paths': dict(DEFAULT_SETTINGS['paths']),
        'watcher': {
            **DEFAULT_SETTINGS['watcher'],
            'include_patterns': list(DEFAULT_SETTINGS['watcher']['include_patterns']),
            'exclude_patterns': list(DEFAULT_SETTINGS['watcher']['exclude_patterns'])
        },
        'router': dict(DEFAULT_SETTINGS['router']),
        'consistency': dict(DEFAULT_SETTINGS['consistency']),
        'arbiter': {
            **DEFAULT_SETTINGS['arbiter'],
            'precedence_rules': {
                field: list(values)
                for field, values in DEFAULT_SETTINGS['arbiter']['precedence_rules'].items()
            }
        },
        'scheduler': {
            **DEFAULT_SETTINGS['scheduler'],
            'priority_weights': dict(DEFAULT_SETTINGS['scheduler']['priority_weights']),
            'agent_capabilities': {}
        },
        'description': None,
        'version': DEFAULT_SETTINGS['project']['version']
    }
