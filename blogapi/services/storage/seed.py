"""Default administrator and sample posts written at backend bootstrap."""

from blogapi.models.post import InsertPost
from blogapi.models.user import InsertUser
from blogapi.services.passwords import hash_password

# Days between consecutive sample posts' publish dates
SAMPLE_POST_SPACING_DAYS = 3

SAMPLE_POSTS = [
    {
        "title": "The Future of AI in Tech Career Development",
        "excerpt": "AI is changing how engineers plan their careers, from personalised learning paths to smarter job matching.",
        "content": (
            "# The Future of AI in Tech Career Development\n\n"
            "Career planning used to depend on a handful of mentors. Models trained "
            "on millions of career paths and job postings now suggest the next skill "
            "to learn and the roles that fit it.\n\n"
            "## What changes for engineers\n\n"
            "Guidance becomes continuous instead of a yearly review, and gaps show up "
            "before they cost an opportunity."
        ),
        "category": "Career Development",
        "featured_image": "https://images.unsplash.com/photo-1504384308090-c894fdcc538d?w=1050&q=80",
        "read_time": 8,
    },
    {
        "title": "How to Prepare for Technical Interviews",
        "excerpt": "Strategies, common question types and a preparation plan for your next technical interview.",
        "content": (
            "# How to Prepare for Technical Interviews\n\n"
            "Interviews now weigh problem solving and communication as much as raw "
            "coding speed.\n\n"
            "## A four-week plan\n\n"
            "Review data structures, practise explaining trade-offs out loud, and run "
            "at least two mock system-design sessions."
        ),
        "category": "Career Development",
        "featured_image": "https://images.unsplash.com/photo-1596496181871-9681eacf9764?w=1050&q=80",
        "read_time": 6,
    },
    {
        "title": "The Complete Guide to Modern Frontend Frameworks",
        "excerpt": "React, Vue, Angular and Svelte compared so you can pick the right tool for your next project.",
        "content": (
            "# The Complete Guide to Modern Frontend Frameworks\n\n"
            "Choosing a framework is a long-term commitment.\n\n"
            "## React\n\n"
            "Component model, huge ecosystem, and a virtual DOM that keeps rendering "
            "predictable.\n\n"
            "## Svelte\n\n"
            "Compiles components away and ships very little runtime."
        ),
        "category": "Web Development",
        "featured_image": "https://images.unsplash.com/photo-1555066931-4365d14bab8c?w=1050&q=80",
        "read_time": 10,
    },
    {
        "title": "Getting Started with Machine Learning: A Beginner's Guide",
        "excerpt": "The core ideas of machine learning with practical first steps for your ML journey.",
        "content": (
            "# Getting Started with Machine Learning\n\n"
            "Machine learning is about learning patterns from data instead of writing "
            "rules by hand.\n\n"
            "## First project\n\n"
            "Pick a small tabular dataset, train a linear baseline, then try a tree "
            "ensemble and compare."
        ),
        "category": "Machine Learning",
        "featured_image": "https://images.unsplash.com/photo-1591453089816-0fbb971b454c?w=1050&q=80",
        "read_time": 7,
    },
]


def admin_user(username: str, password: str) -> InsertUser:
    """Seed administrator with a freshly hashed password."""
    return InsertUser(
        username=username,
        password=hash_password(password),
        display_name="Administrator",
        is_admin=True,
    )


def sample_posts(author_id: int | None) -> list[InsertPost]:
    """Sample posts, newest first, all published on creation."""
    return [
        InsertPost(**post, author_id=author_id, status="published", publish_now=True)
        for post in SAMPLE_POSTS
    ]
