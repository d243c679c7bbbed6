"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labels=()):
    """Register a counter once; reuse the existing collector on re-import"""
    try:
        return Counter(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Auth metrics
login_attempts_counter = _counter(
    'tweetwise_login_attempts_total',
    'Total number of login attempts',
    ['status']
)

# AI gateway metrics (outcome: fresh, cached, degraded, error)
ai_checks_counter = _counter(
    'tweetwise_ai_checks_total',
    'Total number of AI suggestion requests',
    ['kind', 'outcome']
)

# Twitter metrics
tweets_posted_counter = _counter(
    'tweetwise_tweets_posted_total',
    'Total number of tweet posting attempts',
    ['status']
)

token_refresh_counter = _counter(
    'tweetwise_twitter_token_refresh_total',
    'Total number of Twitter token refresh attempts',
    ['status']
)

# Scheduler metrics
scheduler_runs_counter = _counter(
    'tweetwise_scheduler_runs_total',
    'Total number of scheduled tweet dispatcher runs',
    ['status']
)
