import argparse
import importlib
import os
import sys

from benedict import benedict

from poolmasterd import DEFAULT_LOGS_DIR, DEFAULT_TMP_DIR, MonitoredTask

CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml")


def config_loader(config_path=None):
    config_path = config_path or CONFIG_PATH
    if not os.path.isfile(config_path):
        print(f"Error loading configuration: {config_path} not found")
        return None
    try:
        return benedict.from_yaml(config_path)
    except Exception as e:
        print(f"Error loading configuration: {e}")
        return None


def parse_config(config):
    """
    Validate the loaded configuration.
    Returns {'paths': {...}, 'tasks': {name: task config dict}}.
    """
    if not config or 'tasks' not in config or not config['tasks']:
        raise ValueError("Invalid config: 'tasks' section not found")
    config = benedict(config)

    paths = {
        'tmp_dir': os.path.abspath(config.get('paths.tmp_dir') or DEFAULT_TMP_DIR),
        'logs_dir': os.path.abspath(config.get('paths.logs_dir') or DEFAULT_LOGS_DIR),
    }

    tasks = {}
    for task_name, task_config in config['tasks'].items():
        if not isinstance(task_config, dict) or 'class' not in task_config:
            raise ValueError(f"Task '{task_name}' missing required field 'class'")

        parsed_task = {
            'name': task_name,
            'class': task_config['class'],
            'workers': task_config.get('workers', MonitoredTask.worker_count),
            'memory_limit': task_config.get('memory_limit'),
            'options': task_config.get('options') or {},
        }

        module_name, _, class_name = str(parsed_task['class']).partition(':')
        if not module_name or not class_name:
            raise ValueError(f"Invalid class for '{task_name}': {parsed_task['class']} (expected module:Class)")
        workers = parsed_task['workers']
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
            raise ValueError(f"workers must be an integer >= 1 for '{task_name}'")
        memory_limit = parsed_task['memory_limit']
        if memory_limit is not None and (isinstance(memory_limit, bool) or not isinstance(memory_limit, int) or memory_limit < 1):
            raise ValueError(f"Invalid memory_limit for '{task_name}': {memory_limit}")
        if not isinstance(parsed_task['options'], dict):
            raise ValueError(f"options must be a mapping for '{task_name}'")
        parsed_task['options'] = dict(parsed_task['options'])

        tasks[task_name] = parsed_task

    return {'paths': paths, 'tasks': tasks}


def parse_overrides(pairs) -> dict:
    """Turn repeated -o KEY=VALUE arguments into an options dict."""
    options = {}
    for pair in pairs or []:
        key, sep, value = pair.partition('=')
        if not sep or not key.strip():
            raise ValueError(f"Invalid option '{pair}', expected KEY=VALUE")
        options[key.strip()] = value
    return options


def load_task_class(path):
    module_name, _, class_name = path.partition(':')
    module = importlib.import_module(module_name)
    cls = getattr(module, class_name, None)
    if not isinstance(cls, type) or not issubclass(cls, MonitoredTask):
        raise ValueError(f"{path} is not a MonitoredTask subclass")
    return cls


def build_task(task_config, paths):
    cls = load_task_class(task_config['class'])
    task = cls(task_config['name'], tmp_dir=paths['tmp_dir'], logs_dir=paths['logs_dir'])
    task.worker_count = task_config['workers']
    if task_config['memory_limit'] is not None:
        task.memory_limit = task_config['memory_limit']
    return task


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run a task as a pool of daemonized worker processes")
    parser.add_argument('-c', '--config', default=CONFIG_PATH,
                        help='Configuration file path (default: config.yaml next to this script)')
    parser.add_argument('-o', '--option', action='append', default=[], metavar='KEY=VALUE',
                        help='Override a task option, can be repeated')
    parser.add_argument('task', help='Task name as declared under tasks: in the config')
    parser.add_argument('op', nargs='?', default='status',
                        help='start, stop, restart, status (default) or help')
    args = parser.parse_args(argv)

    config = config_loader(args.config)
    if config is None:
        return 1
    try:
        parsed = parse_config(config)
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 1

    task_config = parsed['tasks'].get(args.task)
    if task_config is None:
        print(f"Unknown task '{args.task}'. Configured tasks: {', '.join(sorted(parsed['tasks']))}")
        return 1

    try:
        overrides = parse_overrides(args.option)
        task = build_task(task_config, parsed['paths'])
    except (ValueError, ImportError) as e:
        print(f"Cannot load task '{args.task}': {e}")
        return 1

    options = {**task_config['options'], **overrides}
    return task.run(args.op, options)


if __name__ == "__main__":
    sys.exit(main())
