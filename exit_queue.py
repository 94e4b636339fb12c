import logging
import re

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 8
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

# Served when the queue page cannot be fetched or parsed
FALLBACK_EXIT_QUEUE = {
    "eth": 838850,
    "wait": "14 days 14 hours",
    "churn": "256/epoch",
    "sweep_delay": "8.6 days",
}

EXIT_QUEUE_SECTION = re.compile(r"Exit Queue[\s\S]*?</h5>", re.I)
SPAN_VALUE = r"[\s\S]*?<span[^>]*>([^<]+)</span>"
ETH_PATTERN = r"ETH:[\s\S]*?<span[^>]*>([\d,]+)</span>"


class ExitQueue:
    def __init__(self, exit_queue_url):
        self.exit_queue_url = exit_queue_url

    def get_exit_queue_info(self):
        """
        Returns the network exit queue size in ETH, the expected wait, the
        churn limit and the withdrawal sweep delay.
        """
        try:
            response = requests.get(
                self.exit_queue_url,
                headers={"User-Agent": USER_AGENT},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Exit queue fetch failed, using fallback: %s", e)
            return dict(FALLBACK_EXIT_QUEUE)

        return parse_exit_queue(response.text or "")


def _search(pattern, *texts):
    for text in texts:
        match = re.search(pattern, text, re.I)
        if match:
            return match.group(1)
    return None


def parse_exit_queue(html):
    section_match = EXIT_QUEUE_SECTION.search(html)
    if not section_match:
        logger.warning("Exit Queue section not found, using fallback")
        return dict(FALLBACK_EXIT_QUEUE)

    section = section_match.group(0)
    # the page sometimes renders values after the section heading closes
    page_tail = html[section_match.start():]

    eth = _search(ETH_PATTERN, section, page_tail)
    wait = _search(r"Wait:" + SPAN_VALUE, section, page_tail)
    churn = _search(r"Churn:" + SPAN_VALUE, section, page_tail)
    sweep_delay = _search(r"Sweep Delay[^:]*:" + SPAN_VALUE, html)

    return {
        "eth": int(eth.replace(",", "")) if eth else FALLBACK_EXIT_QUEUE["eth"],
        "wait": wait.strip() if wait else FALLBACK_EXIT_QUEUE["wait"],
        "churn": churn.strip() if churn else FALLBACK_EXIT_QUEUE["churn"],
        "sweep_delay": sweep_delay.strip() if sweep_delay else FALLBACK_EXIT_QUEUE["sweep_delay"],
    }
