import io

try:
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt
except Exception:  # pragma: no cover
    matplotlib = None
    plt = None

CATEGORY_COLORS = {
    'good': '#22c55e',
    'dirty': '#f59e0b',
    'cracked': '#ef4444',
    'bad': '#7f1d1d',
    'small': '#60a5fa',
    'medium': '#2563eb',
    'large': '#1e3a8a',
    'defect': '#ef4444',
}
DEFAULT_COLOR = '#94a3b8'


def fig_to_png(fig) -> bytes:
    buf = io.BytesIO()
    fig.savefig(buf, format='png', bbox_inches='tight', dpi=150)
    plt.close(fig)
    return buf.getvalue()


def _color(name):
    return CATEGORY_COLORS.get(name, DEFAULT_COLOR)


def draw_category_chart(ax, counts: dict, title: str) -> None:
    labels = [name for name, count in counts.items() if count]
    values = [counts[name] for name in labels]
    if not values:
        ax.text(0.5, 0.5, 'No data', ha='center', va='center', fontsize=12, color='#64748b')
        ax.axis('off')
    else:
        ax.pie(
            values,
            labels=[label.title() for label in labels],
            colors=[_color(label) for label in labels],
            autopct='%1.0f%%',
            startangle=90,
            wedgeprops={'width': 0.45},
        )
        ax.axis('equal')
    ax.set_title(title)


def draw_hourly_chart(ax, buckets: list[dict], categories, title: str) -> None:
    labels = [bucket['label'] for bucket in buckets]
    bottom = [0] * len(buckets)
    for name in categories:
        values = [bucket.get(name, 0) for bucket in buckets]
        ax.bar(labels, values, bottom=bottom, color=_color(name), label=name.title())
        bottom = [base + value for base, value in zip(bottom, values)]
    ax.set_title(title)
    ax.set_ylabel('Eggs')
    ax.tick_params(axis='x', rotation=90, labelsize=7)
    ax.legend(loc='upper left', fontsize=7)


def category_chart(counts: dict, title: str) -> bytes | None:
    """Return a donut chart of ``counts`` as PNG bytes."""
    if plt is None:
        return None
    fig, ax = plt.subplots(figsize=(5, 4))
    draw_category_chart(ax, counts, title)
    return fig_to_png(fig)


def hourly_chart(buckets: list[dict], categories, title: str) -> bytes | None:
    if plt is None:
        return None
    fig, ax = plt.subplots(figsize=(9, 4))
    draw_hourly_chart(ax, buckets, categories, title)
    fig.tight_layout()
    return fig_to_png(fig)
