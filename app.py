import gradio as gr
from gradio_leaderboard import Leaderboard
import os
import time
import threading
import argparse
import requests
from datetime import datetime, timezone
from dotenv import load_dotenv
import pandas as pd
import plotly.graph_objects as go
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
load_dotenv()

# =============================================================================
# CONFIGURATION
# =============================================================================

# Raw content of the tracking repository, where the tracker commits the JSON files
DATA_BASE_URL = os.getenv(
    'DATA_BASE_URL',
    "https://raw.githubusercontent.com/MethodistCollege/hacknovate-commit-tracker/main/"
)
LEADERBOARD_PATH = "data/leaderboard.json"
HISTORY_PATH = "data/history.json"
POLL_INTERVAL_SECONDS = int(os.getenv('POLL_INTERVAL_SECONDS', '30'))
REQUEST_TIMEOUT = 30
FALLBACK_COLOR = '#4c51bf'
TEAM_COLUMN_PREFIX = "team:"

LEADERBOARD_COLUMNS = [
    ("Rank", "number"),
    ("Team", "string"),
    ("Total Commits", "number"),
]


# =============================================================================
# DATA FETCHING
# =============================================================================

class DashboardClient:
    """
    Polls the published leaderboard and history files.

    Holds only the last snapshot that was fetched successfully; a failed poll
    leaves it untouched.
    """

    def __init__(self, base_url=DATA_BASE_URL, session=None):
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.session = session or requests.Session()
        self.lock = threading.Lock()
        self.leaderboard = []
        self.history = []
        self.last_update = None

    def fetch_artifact(self, path):
        """Fetch one JSON file, defeating caches with a timestamp parameter."""
        response = self.session.get(
            self.base_url + path,
            params={'cache': int(time.time() * 1000)},
            timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError(f"{path} did not contain a list")
        for item in data:
            if not isinstance(item, dict):
                raise ValueError(f"{path} contains a non-object entry: {item!r}")
            if not isinstance(item.get('teams', {}), dict):
                raise ValueError(f"{path} contains an entry with invalid teams: {item!r}")
        return data

    def refresh(self):
        """
        Fetch both files and replace the snapshot wholesale.
        Returns True on success, False if the previous snapshot was kept.
        """
        try:
            leaderboard = self.fetch_artifact(LEADERBOARD_PATH)
            history = self.fetch_artifact(HISTORY_PATH)
        except (requests.RequestException, ValueError) as e:
            print(f"✗ Error fetching data: {e}")
            return False

        with self.lock:
            self.leaderboard = leaderboard
            self.history = history
            self.last_update = datetime.now().strftime('%I:%M:%S %p')
        return True

    def snapshot(self):
        """Return (leaderboard, history, last_update) as one consistent view."""
        with self.lock:
            return self.leaderboard, self.history, self.last_update


# =============================================================================
# DATA TRANSFORMS
# =============================================================================

def team_legend(leaderboard):
    """Team id -> name/color mapping for the chart, in leaderboard order."""
    return [
        {
            'id': team.get('id'),
            'name': team.get('name') or team.get('id'),
            'color': team.get('color') or FALLBACK_COLOR,
        }
        for team in leaderboard
        if team.get('id')
    ]


def team_column(team_id):
    """Row key for a team's count, kept apart from the time/total keys."""
    return TEAM_COLUMN_PREFIX + str(team_id)


def flatten_history(history):
    """
    Flatten history entries into chart rows: time, timestamp, total and one
    team_column() key per team.
    """
    rows = []
    for entry in history:
        row = {
            'time': entry.get('time'),
            'timestamp': entry.get('timestamp'),
            'total': entry.get('total', 0),
        }
        for team_id, count in (entry.get('teams') or {}).items():
            row[team_column(team_id)] = count
        rows.append(row)
    return rows


def unflatten_history(rows, team_ids):
    """Rebuild the per-team mapping of each row for the given team ids."""
    return [
        {
            'time': row.get('time'),
            'timestamp': row.get('timestamp'),
            'teams': {team_id: row[team_column(team_id)] for team_id in team_ids if team_column(team_id) in row},
            'total': row.get('total', 0),
        }
        for row in rows
    ]


def total_commits(leaderboard):
    return sum(team.get('total_commits', 0) or 0 for team in leaderboard)


# =============================================================================
# UI FUNCTIONS
# =============================================================================

def get_leaderboard_dataframe(leaderboard):
    """
    Convert the leaderboard to a DataFrame for display.
    Rows keep the order the tracker published (already sorted).
    """
    column_names = [col[0] for col in LEADERBOARD_COLUMNS]
    rows = [
        [rank, team.get('name') or team.get('id', 'Unknown'), team.get('total_commits', 0) or 0]
        for rank, team in enumerate(leaderboard, start=1)
    ]
    df = pd.DataFrame(rows, columns=column_names)
    df["Total Commits"] = pd.to_numeric(df["Total Commits"], errors='coerce').fillna(0).astype(int)
    return df


def create_commit_trend_plot(leaderboard, history):
    """
    Create a Plotly figure with one line per team across the history window.
    Teams missing from a history entry are plotted as zero for that point.
    """
    legend = team_legend(leaderboard)
    rows = flatten_history(history)

    if not legend or not rows:
        fig = go.Figure()
        fig.add_annotation(
            text="No data available for visualization",
            xref="paper", yref="paper",
            x=0.5, y=0.5, showarrow=False,
            font=dict(size=16)
        )
        fig.update_layout(title=None, xaxis_title=None, height=450)
        return fig

    fig = go.Figure()
    # Distinct runs can share a time-of-day label, so points are placed by timestamp
    times = [
        datetime.fromtimestamp(row['timestamp'] / 1000, tz=timezone.utc)
        if isinstance(row['timestamp'], (int, float)) else None
        for row in rows
    ]
    labels = [row['time'] for row in rows]
    for team in legend:
        fig.add_trace(
            go.Scatter(
                x=times,
                y=[row.get(team_column(team['id']), 0) for row in rows],
                customdata=labels,
                name=team['name'],
                mode='lines+markers',
                line=dict(color=team['color'], width=3, shape='spline'),
                marker=dict(size=6),
                hovertemplate='<b>%{fullData.name}</b><br>' +
                             'Time: %{customdata}<br>' +
                             'Commits: %{y}<br>' +
                             '<extra></extra>'
            )
        )

    fig.update_xaxes(title_text=None, tickvals=times, ticktext=labels)
    fig.update_yaxes(title_text="<b>Commits per window</b>", rangemode='tozero', tickformat=',d')
    fig.update_layout(
        title=None,
        hovermode='x unified',
        height=450,
        legend=dict(
            orientation="h",
            yanchor="bottom",
            y=1.02,
            xanchor="right",
            x=1
        ),
        margin=dict(l=50, r=50, t=80, b=50)
    )
    return fig


def format_header(leaderboard, last_update):
    return (
        f"## Total Commits: {total_commits(leaderboard)}\n"
        f"*Dashboard last refreshed: {last_update or 'Loading...'}*"
    )


def render(client):
    """Render the client's current snapshot for the Gradio outputs."""
    leaderboard, history, last_update = client.snapshot()
    return (
        format_header(leaderboard, last_update),
        get_leaderboard_dataframe(leaderboard),
        create_commit_trend_plot(leaderboard, history),
    )


# =============================================================================
# GRADIO APPLICATION
# =============================================================================

def build_dashboard(client, poll_interval=POLL_INTERVAL_SECONDS):
    header, leaderboard_df, trend_fig = render(client)

    with gr.Blocks(title="Live Commit Tracker") as app:

        gr.Markdown("# 🏆 Live Commit Tracker")
        gr.Markdown("Commits per team, updated every 5 minutes")
        header_md = gr.Markdown(header)

        with gr.Row():
            with gr.Column(scale=1):
                gr.Markdown("### Overall Leaderboard")
                leaderboard_table = Leaderboard(
                    value=leaderboard_df,
                    datatype=[col[1] for col in LEADERBOARD_COLUMNS],
                    search_columns=["Team"],
                )

            with gr.Column(scale=2):
                gr.Markdown("### 5-Minute Commit Activity Trend")
                trend_plot = gr.Plot(value=trend_fig, label="Commit Activity")

        timer = gr.Timer(value=poll_interval)
        timer.tick(
            fn=lambda: render(client),
            outputs=[header_md, leaderboard_table, trend_plot]
        )
        app.load(
            fn=lambda: render(client),
            outputs=[header_md, leaderboard_table, trend_plot]
        )

    return app


def start_polling(client, poll_interval=POLL_INTERVAL_SECONDS):
    """Fetch once now, then keep polling in the background."""
    client.refresh()
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        client.refresh,
        trigger=IntervalTrigger(seconds=poll_interval),
        id='dashboard_poll',
        name='Dashboard Data Poll',
        replace_existing=True
    )
    scheduler.start()
    print(f"✓ Scheduler started: polling {client.base_url} every {poll_interval} seconds")
    return scheduler


def main(argv=None):
    parser = argparse.ArgumentParser(description='Live Commit Tracker dashboard')
    parser.add_argument('--base-url', default=DATA_BASE_URL,
                        help='Base URL the leaderboard and history files are served from')
    parser.add_argument('--poll-interval', type=int, default=POLL_INTERVAL_SECONDS,
                        help='Seconds between data polls')
    args = parser.parse_args(argv)

    client = DashboardClient(args.base_url)
    start_polling(client, args.poll_interval)
    app = build_dashboard(client, args.poll_interval)
    app.launch()


# Launch application
if __name__ == "__main__":
    main()
