"""
Live Commit Tracker
Counts commits per team over the last window and publishes the leaderboard
and history files consumed by the dashboard.
"""

import argparse
import json
import os
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone, timedelta

import requests
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv
from huggingface_hub import HfApi

# Load environment variables
load_dotenv()

# =============================================================================
# CONFIGURATION
# =============================================================================

GITHUB_API_URL = "https://api.github.com"
WINDOW_MINUTES = 5  # Must match the schedule interval
HISTORY_LIMIT = 50  # ~4 hours of 5-minute windows
PER_PAGE = 100  # Single page per repo; larger windows are undercounted
REQUEST_TIMEOUT = 30

DATA_DIR = os.getenv('DATA_DIR', os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data'))
TEAMS_FILENAME = "teams.json"
LEADERBOARD_FILENAME = "leaderboard.json"
HISTORY_FILENAME = "history.json"

GIT_USER_NAME = os.getenv('GIT_USER_NAME', "github-actions[bot]")
GIT_USER_EMAIL = os.getenv('GIT_USER_EMAIL', "41898282+github-actions[bot]@users.noreply.github.com")
HF_DATASET_REPO = os.getenv('HF_DATASET_REPO')
PUBLISH_TARGETS = ("git", "hf")


class PublishError(Exception):
    """Raised when the updated files could not be made visible to readers."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def read_json(file_path, default):
    """Load a JSON file, returning default if it is missing or malformed."""
    if not os.path.exists(file_path):
        return default

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"✗ Error reading {file_path}: {e}")
        return default


def write_json(file_path, data):
    """Save data to a JSON file with 2-space indentation."""
    with open(file_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
        f.write('\n')


def format_iso(moment):
    """Format a datetime as an ISO 8601 UTC string with Z suffix."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def get_github_token():
    """Get the GitHub token from environment variables."""
    token = os.getenv('GH_PAT') or os.getenv('GITHUB_TOKEN')
    if not token:
        print("⚠️ Warning: GH_PAT not found. API rate limits: 60/hour (authenticated: 5000/hour)")
    return token


def get_hf_token():
    """Get HuggingFace token from environment variables."""
    token = os.getenv('HF_TOKEN')
    if not token:
        print("⚠️ Warning: HF_TOKEN not found in environment variables")
    return token


def load_teams(data_dir):
    """
    Load the team configuration.
    Entries without an id cannot be keyed on the leaderboard and are skipped.
    """
    teams = read_json(os.path.join(data_dir, TEAMS_FILENAME), [])
    if not isinstance(teams, list):
        print(f"✗ Error: {TEAMS_FILENAME} must contain a list of teams")
        return []

    valid = []
    for team in teams:
        if not isinstance(team, dict) or not team.get('id'):
            print(f"⚠️ Warning: Skipping team without id: {team}")
            continue
        if not isinstance(team.get('repos', []), list):
            print(f"⚠️ Warning: Team '{team['id']}' has invalid repos {team.get('repos')!r}, using none")
            team = dict(team, repos=[])
        valid.append(team)
    return valid


def load_state(data_dir):
    """Load the persisted leaderboard and history (empty lists if absent)."""
    leaderboard = read_json(os.path.join(data_dir, LEADERBOARD_FILENAME), [])
    history = read_json(os.path.join(data_dir, HISTORY_FILENAME), [])
    if not isinstance(leaderboard, list):
        print(f"✗ Error: {LEADERBOARD_FILENAME} is not a list, starting empty")
        leaderboard = []
    if not isinstance(history, list):
        print(f"✗ Error: {HISTORY_FILENAME} is not a list, starting empty")
        history = []
    return leaderboard, history


# =============================================================================
# GITHUB API FUNCTIONS
# =============================================================================

def count_commits_in_window(owner, repo, since, until, token=None, session=requests):
    """
    Count commits pushed to owner/repo between since and until.

    Only the first page (PER_PAGE commits) is read. Any error is logged and
    counted as zero so one bad repository never aborts the run.
    """
    url = f"{GITHUB_API_URL}/repos/{owner}/{repo}/commits"
    headers = {'Accept': 'application/vnd.github+json'}
    if token:
        headers['Authorization'] = f'token {token}'
    params = {
        'since': format_iso(since),
        'until': format_iso(until),
        'per_page': PER_PAGE,
    }

    try:
        response = session.get(url, headers=headers, params=params, timeout=REQUEST_TIMEOUT)
        if response.status_code != 200:
            message = ''
            try:
                message = response.json().get('message', '')
            except (ValueError, AttributeError):
                pass
            print(f"   ✗ Repo Error ({owner}/{repo}): {response.status_code} {message}".rstrip())
            return 0

        commits = response.json()
        if not isinstance(commits, list):
            print(f"   ✗ Repo Error ({owner}/{repo}): unexpected response body")
            return 0
        return len(commits)

    except (requests.RequestException, ValueError) as e:
        print(f"   ✗ Repo Error ({owner}/{repo}): API {e}")
        return 0


def split_repo_path(repo_path):
    """Split 'owner/name' into (owner, name), or None if malformed."""
    if not isinstance(repo_path, str):
        return None
    parts = repo_path.strip().split('/')
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


def count_repo(repo_path, since, until, token=None, session=requests):
    """Count commits for one 'owner/name' entry of a team config."""
    parsed = split_repo_path(repo_path)
    if parsed is None:
        print(f"   ⚠️ Warning: Invalid repository '{repo_path}', expected owner/name")
        return 0
    owner, name = parsed
    return count_commits_in_window(owner, name, since, until, token=token, session=session)


def aggregate_window(teams, since, until, token=None, session=requests, max_workers=1):
    """
    Sum window commit counts for every configured team.

    Repositories are counted sequentially unless max_workers > 1, in which
    case they are fanned out to a thread pool. Results are only summed, so
    the order of completion does not matter.

    Returns:
        Tuple of ({team_id: window_count}, total_window_count)
    """
    jobs = [(team['id'], repo_path) for team in teams for repo_path in team.get('repos') or []]
    window_counts = {team['id']: 0 for team in teams}

    if max_workers > 1 and len(jobs) > 1:
        print(f"   🚀 Counting {len(jobs)} repositories with {max_workers} workers")
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            counts = list(executor.map(
                lambda job: count_repo(job[1], since, until, token=token, session=session),
                jobs
            ))
    else:
        counts = [count_repo(repo_path, since, until, token=token, session=session)
                  for _, repo_path in jobs]

    for (team_id, _), count in zip(jobs, counts):
        window_counts[team_id] += count

    return window_counts, sum(window_counts.values())


# =============================================================================
# STATE MERGING
# =============================================================================

def merge_leaderboard(leaderboard, teams, window_counts):
    """
    Add this window's counts to the cumulative leaderboard.

    Every configured team gets an entry (new ones start at zero). Entries for
    teams that left the config are kept as they are. The result is sorted by
    total_commits descending; equal totals keep their previous order.
    """
    entries = {}
    for entry in leaderboard:
        if not isinstance(entry, dict) or not entry.get('id'):
            print(f"⚠️ Warning: Dropping leaderboard entry without id: {entry}")
            continue
        entry = dict(entry)
        total = entry.get('total_commits', 0)
        if not isinstance(total, int) or isinstance(total, bool) or total < 0:
            print(f"⚠️ Warning: Invalid total_commits {total!r} for '{entry['id']}', resetting to 0")
            entry['total_commits'] = 0
        entries[entry['id']] = entry

    for team in teams:
        team_id = team['id']
        entry = entries.get(team_id) or {
            'id': team_id,
            'name': team.get('name', team_id),
            'total_commits': 0,
            'color': team.get('color'),
        }
        entry['total_commits'] = entry['total_commits'] + window_counts.get(team_id, 0)
        entries[team_id] = entry

    return sorted(entries.values(), key=lambda e: e['total_commits'], reverse=True)


def build_history_entry(now, window_counts):
    """Create the history point for the window ending at now."""
    return {
        'time': now.strftime('%I:%M %p'),
        'timestamp': int(now.timestamp() * 1000),
        'teams': dict(window_counts),
        'total': sum(window_counts.values()),
    }


def append_history(history, entry, limit=HISTORY_LIMIT):
    """Append entry and keep only the newest limit entries (none if limit <= 0)."""
    if limit <= 0:
        return []
    return (list(history) + [entry])[-limit:]


# =============================================================================
# PUBLISHING
# =============================================================================

def write_artifacts(leaderboard, history, data_dir):
    """Write both artifacts to data_dir and return their paths."""
    os.makedirs(data_dir, exist_ok=True)
    leaderboard_path = os.path.join(data_dir, LEADERBOARD_FILENAME)
    history_path = os.path.join(data_dir, HISTORY_FILENAME)
    write_json(leaderboard_path, leaderboard)
    write_json(history_path, history)
    return [leaderboard_path, history_path]


def run_git(args, cwd):
    """Run a git command, raising PublishError with its stderr on failure."""
    try:
        result = subprocess.run(['git', *args], cwd=cwd, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        stderr = getattr(e, 'stderr', '') or ''
        print(f"✗ Commit Error: git {' '.join(args)}")
        if stderr:
            print(stderr.strip())
        raise PublishError(f"Failed to commit: git {args[0]}: {stderr.strip() or e}") from e
    return result.stdout


def publish_with_git(paths, commit_message, repo_dir=None):
    """Stage, commit and push exactly the given files."""
    repo_dir = repo_dir or os.path.dirname(paths[0])
    print("📤 Committing updated files...")
    run_git(['config', 'user.email', GIT_USER_EMAIL], repo_dir)
    run_git(['config', 'user.name', GIT_USER_NAME], repo_dir)
    run_git(['add', *paths], repo_dir)
    output = run_git(['commit', '-m', commit_message, '--allow-empty'], repo_dir)
    if output.strip():
        print(output.strip())
    run_git(['push'], repo_dir)


def publish_with_hf(data_dir, commit_message, repo_id=None, token=None, api=None):
    """Upload both files to a HuggingFace dataset repo in a single commit."""
    repo_id = repo_id or HF_DATASET_REPO
    if not repo_id:
        raise PublishError("HF_DATASET_REPO is not set")

    api = api or HfApi()
    print(f"📤 Uploading updated files to {repo_id}...")
    try:
        api.upload_folder(
            folder_path=data_dir,
            path_in_repo="data",
            repo_id=repo_id,
            repo_type="dataset",
            token=token or get_hf_token(),
            commit_message=commit_message,
            allow_patterns=[LEADERBOARD_FILENAME, HISTORY_FILENAME],
        )
    except Exception as e:
        raise PublishError(f"Failed to upload to {repo_id}: {e}") from e


def publish(leaderboard, history, data_dir, now, target="git", repo_dir=None):
    """
    Write both artifacts locally, then publish them as one versioned commit.

    The local write is not rolled back if publishing fails.
    """
    paths = write_artifacts(leaderboard, history, data_dir)
    commit_message = f"Automated data update: {now.astimezone(timezone.utc).isoformat()}"

    if target == "git":
        publish_with_git(paths, commit_message, repo_dir=repo_dir)
    elif target == "hf":
        publish_with_hf(data_dir, commit_message)
    else:
        raise PublishError(f"Unknown publish target '{target}' (expected one of {', '.join(PUBLISH_TARGETS)})")
    print("   ✅ Publish complete!")


# =============================================================================
# MAIN TRACKING FUNCTION
# =============================================================================

def run_tracker(data_dir=DATA_DIR, now=None, token=None, session=requests,
                target="git", repo_dir=None, no_publish=False, max_workers=1):
    """
    Run one end-to-end update: count the last window, merge, publish.

    Returns the new history entry for the window.
    """
    print(f"Starting {WINDOW_MINUTES}-minute commit check...")

    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=WINDOW_MINUTES)
    token = token if token is not None else get_github_token()

    teams = load_teams(data_dir)
    leaderboard, history = load_state(data_dir)
    print(f"   Loaded {len(teams)} team(s), {len(leaderboard)} leaderboard entries, {len(history)} history points")

    window_counts, total = aggregate_window(teams, since, now, token=token, session=session, max_workers=max_workers)

    new_leaderboard = merge_leaderboard(leaderboard, teams, window_counts)
    entry = build_history_entry(now, window_counts)
    new_history = append_history(history, entry)

    if no_publish:
        write_artifacts(new_leaderboard, new_history, data_dir)
        print("   ⏭️  Publishing skipped (--no-publish)")
    else:
        publish(new_leaderboard, new_history, data_dir, now, target=target, repo_dir=repo_dir)

    print(f"📊 Commit fetching complete. Total window commits: {total}")
    return entry


def schedule_tracker(**run_kwargs):
    """Run the tracker in-process on the window cadence."""
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        safe_run_tracker,
        trigger=CronTrigger(minute=f"*/{WINDOW_MINUTES}"),
        kwargs=run_kwargs,
        id='commit_window_update',
        name='Commit Window Update',
        replace_existing=True
    )
    print(f"✓ Scheduler started: commit window update every {WINDOW_MINUTES} minutes")
    scheduler.start()


def safe_run_tracker(**run_kwargs):
    """Scheduled wrapper: a failed run is reported and the next one still fires."""
    try:
        run_tracker(**run_kwargs)
    except PublishError as e:
        print(f"✗ Tracker failed to complete successfully: {e}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Live team commit tracker')
    parser.add_argument('--data-dir', default=DATA_DIR,
                        help='Directory holding teams.json, leaderboard.json and history.json')
    parser.add_argument('--target', choices=PUBLISH_TARGETS, default=os.getenv('PUBLISH_TARGET', 'git'),
                        help='Where to publish the updated files (default: git)')
    parser.add_argument('--repo-dir', default=None,
                        help='Git working tree to commit in (default: the data directory)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Number of repositories to query concurrently')
    parser.add_argument('--no-publish', action='store_true',
                        help='Write files locally without committing or uploading them')
    parser.add_argument('--schedule', action='store_true',
                        help=f'Keep running and update every {WINDOW_MINUTES} minutes')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    run_kwargs = {
        'data_dir': args.data_dir,
        'target': args.target,
        'repo_dir': args.repo_dir,
        'no_publish': args.no_publish,
        'max_workers': max(1, args.workers),
    }

    if args.schedule:
        schedule_tracker(**run_kwargs)
        return 0

    try:
        run_tracker(**run_kwargs)
    except PublishError as e:
        print(f"✗ Tracker failed to complete successfully: {e}")
        return 1
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    sys.exit(main())
