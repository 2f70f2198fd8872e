#!/usr/bin/env python3
"""
Game Insight - Command Line Interface

Replay recorded frames, rank candidate actions and get rule-based
recommendations from JSON files.

Usage:
    python cli.py replay frames.json --game-type rpg
    python cli.py rank candidates.json
    python cli.py recommend rules.json --json
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from insight.config import ConfigError, InsightConfig
from insight.prioritizer import GameAction, PrioritizedAction
from insight.rules import Rule
from system import GameInsightSystem

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='game-insight',
        description='Game pattern recognition and action prioritization'
    )
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='Configuration file (JSON); INSIGHT_* environment otherwise')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Replay command
    replay_parser = subparsers.add_parser('replay', help='Learn from recorded frames')
    replay_parser.add_argument('input', type=str,
                               help='Frames file (JSON list or {"frames": [...]})')
    replay_parser.add_argument('--game-type', '-g', type=str, default=None,
                               help='Game type (rpg, action_game, racing, strategy...)')
    replay_parser.add_argument('--json', action='store_true',
                               help='Print the summary as JSON')
    replay_parser.add_argument('--save', '-s', type=str, default=None,
                               help='Save learned state to this file')

    # Rank command
    rank_parser = subparsers.add_parser('rank', help='Rank candidate actions')
    rank_parser.add_argument('input', type=str,
                             help='Ranking request (JSON with state, actions, flags, game_type)')
    rank_parser.add_argument('--json', action='store_true',
                             help='Print the ranking as JSON')

    # Recommend command
    recommend_parser = subparsers.add_parser('recommend', help='Recommend actions from rules')
    recommend_parser.add_argument('input', type=str,
                                  help='Recommendation request (JSON with state, rules)')
    recommend_parser.add_argument('--state-file', type=str, default=None,
                                  help='Use the rules learned in a saved state instead')
    recommend_parser.add_argument('--json', action='store_true',
                                  help='Print the recommendations as JSON')

    return parser


def load_json(path: str) -> Any:
    with open(path, 'r') as f:
        return json.load(f)


def build_system(args, **overrides) -> GameInsightSystem:
    config = InsightConfig.from_file(args.config) if args.config else InsightConfig.from_env()
    return GameInsightSystem(config.with_overrides(**overrides))


def print_ranking(ranked: List[PrioritizedAction], as_json: bool):
    if as_json:
        print(json.dumps([p.to_dict() for p in ranked], indent=2))
        return

    if not ranked:
        print("No actions.")
        return
    for i, p in enumerate(ranked, 1):
        factors = ", ".join(f"{name}={value:.2f}" for name, value in p.factors.items())
        print(f"{i}. {p.action.kind} [{p.action.id}] priority={p.final_priority:.3f} ({p.band})")
        if factors:
            print(f"     {factors}")


def cmd_replay(args) -> int:
    """Ingest recorded frames and summarise what was learned"""
    data = load_json(args.input)
    frames = data.get('frames', []) if isinstance(data, dict) else data

    system = build_system(args, game_type=args.game_type, ingest_when_stopped=True)
    if args.game_type:
        system.set_game_type(args.game_type)

    for frame in frames:
        system.ingest_frame(frame.get('elements'), frame.get('state'), frame.get('timestamp'))
    system.analyze_now()

    summary = {
        'frames': len(frames),
        'patterns': [p.to_dict() for p in system.patterns()],
        'enemy_patterns': [p.to_dict() for p in system.enemy_patterns()],
        'rules': [r.to_dict() for r in system.rules()],
        'stats': system.stats(),
    }

    if args.save:
        system.save_state(args.save)

    if args.json:
        print(json.dumps(summary, indent=2, default=str))
        return 0

    print("=" * 60)
    print(f"REPLAY: {len(frames)} frames")
    print("=" * 60)
    print(f"Patterns:       {len(summary['patterns'])}")
    print(f"Enemy patterns: {len(summary['enemy_patterns'])}")
    print(f"Rules:          {len(summary['rules'])}")
    print(f"Causal links:   {len(system.causal_relationships())}")
    for rule in sorted(system.rules(), key=lambda r: r.confidence, reverse=True)[:10]:
        print(f"  [{rule.rule_type.name}] {rule.description} (conf={rule.confidence:.2f})")
    for pattern in system.enemy_patterns():
        print(f"  {pattern.description}")
    return 0


def cmd_rank(args) -> int:
    """Rank candidate actions against a state"""
    request: Dict[str, Any] = load_json(args.input)
    system = build_system(args)

    if request.get('game_type'):
        system.set_game_type(request['game_type'])
    flags = request.get('flags') or {}
    system.set_critical_state_flags(
        low_health=bool(flags.get('low_health', False)),
        low_resource=bool(flags.get('low_resource', False)),
        under_attack=bool(flags.get('under_attack', False)),
        boss_fight=bool(flags.get('boss_fight', False)),
    )

    actions = [GameAction.from_dict(a) for a in request.get('actions') or []]
    print_ranking(system.prioritize_actions(actions, request.get('state')), args.json)
    return 0


def cmd_recommend(args) -> int:
    """Recommend actions from rules in the request or a saved state"""
    request: Dict[str, Any] = load_json(args.input)
    system = build_system(args)

    rules: Optional[List[Rule]] = None
    if args.state_file:
        system.load_state(args.state_file)
    else:
        rules = []
        for data in request.get('rules') or []:
            try:
                rules.append(Rule.from_dict(data))
            except (KeyError, ValueError):
                logger.warning(f"Skipping unreadable rule: {data.get('id', '?')}")

    print_ranking(system.recommend_from_rules(request.get('state'), rules), args.json)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if not args.command:
        parser.print_help()
        return 0

    # Map commands to functions
    commands = {
        'replay': cmd_replay,
        'rank': cmd_rank,
        'recommend': cmd_recommend,
    }

    try:
        return commands[args.command](args)
    except (OSError, json.JSONDecodeError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main() or 0)
