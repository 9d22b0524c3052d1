from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class KnowledgeEntry:
    # Curated product answer shared by every workspace.
    id: str
    answer: str
    category: str = "general"
    question_patterns: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    priority: int = 1


PRODUCT_KNOWLEDGE: tuple[KnowledgeEntry, ...] = (
    KnowledgeEntry(
        id="embedding",
        category="integration",
        question_patterns=(
            r"how\s+do\s+i\s+embed",
            r"embed\s+code",
            r"chat\s+widget\s+snippet",
        ),
        keywords=("embed", "widget", "script", "install", "snippet", "placement"),
        priority=4,
        answer=(
            "There are three ways to add the chat widget to your site:\n\n"
            "1. WooCommerce plugin: install the official plugin and activate it. No code needed.\n"
            "2. Universal script: copy the snippet from your dashboard and paste it just before "
            "the closing </head> tag of any page.\n"
            "3. Platform guides: Shopify app, a script tag in a Next.js layout, or the WordPress plugin.\n\n"
            "Example snippet:\n"
            '<script async src="https://cdn.trulybot.xyz/widget.js" data-project="YOUR_PROJECT_ID"></script>\n\n'
            "Most sites are live in about five minutes."
        ),
    ),
    KnowledgeEntry(
        id="woocommerce-plugin",
        category="integration",
        question_patterns=(r"woo\s*commerce",),
        keywords=("woocommerce", "plugin", "wordpress", "store", "install", "one-click"),
        priority=5,
        answer=(
            "The WooCommerce plugin installs from your WordPress admin in one click. "
            "It injects the widget on every storefront page, picks up your project id automatically "
            "and keeps itself updated. Setup usually takes under five minutes."
        ),
    ),
    KnowledgeEntry(
        id="pricing-overview",
        category="pricing",
        question_patterns=(r"\bpricing\b", r"price\s+list", r"\bplans\b"),
        keywords=("pricing", "cost", "plans", "price", "tiers", "inr"),
        priority=5,
        answer=(
            "Current plans:\n"
            "- Basic: 1,000 conversations per month.\n"
            "- Pro: unlimited conversations under fair use.\n"
            "- Ultra: unlimited conversations under fair use, plus custom branding.\n\n"
            "Need volume pricing or compliance terms? Ask about an enterprise plan."
        ),
    ),
    KnowledgeEntry(
        id="fair-use",
        category="pricing",
        question_patterns=(r"unlimited\s+plan", r"fair\s+use"),
        keywords=("fair", "use", "unlimited", "limit", "caps"),
        answer=(
            "Unlimited means normal, human-scale usage. Sustained spikes far above typical plan "
            "averages, automated or synthetic traffic and extreme concurrency start a scaling "
            "conversation rather than a hard cutoff."
        ),
    ),
    KnowledgeEntry(
        id="free-trial",
        category="pricing",
        question_patterns=(r"free\s+trial", r"try\s+(it\s+)?for\s+free"),
        keywords=("free", "trial", "try", "test", "signup"),
        priority=5,
        answer=(
            "Every plan starts with a free trial. Sign up, upload a few FAQ pages and embed the "
            "widget; you can upgrade or cancel at any time from the dashboard."
        ),
    ),
    KnowledgeEntry(
        id="ingest-content",
        category="setup",
        question_patterns=(r"(ingest|import|upload)\s+(my\s+)?(content|data|documents|docs)",),
        keywords=("ingest", "content", "faqs", "policies", "sources", "import", "upload", "documents"),
        answer=(
            "Upload FAQs, policy pages and product documents from the dashboard. They are split into "
            "passages and indexed for your workspace only, so answers always come from your own content."
        ),
    ),
    KnowledgeEntry(
        id="lead-capture",
        category="lead",
        question_patterns=(r"lead\s+capture", r"capture\s+(leads|emails)"),
        keywords=("lead", "leads", "capture", "email", "contact", "sales"),
        priority=4,
        answer=(
            "Lead capture is opt-in and intent-gated. When a visitor shares an email or phone number, "
            "or asks to be contacted, the conversation is saved as a lead in your dashboard together "
            "with the topics they asked about."
        ),
    ),
    KnowledgeEntry(
        id="features",
        category="features",
        question_patterns=(r"\bfeatures\b", r"\bcapabilities\b"),
        keywords=("features", "capabilities", "functions", "abilities"),
        answer=(
            "Core features: instant answers from curated knowledge, answers grounded in your uploaded "
            "documents, soft lead capture, a customizable widget and privacy-conscious data handling."
        ),
    ),
    KnowledgeEntry(
        id="data-retention",
        category="policy",
        question_patterns=(r"data\s+retention", r"delete\s+my\s+data"),
        keywords=("data", "retention", "store", "delete", "privacy"),
        answer=(
            "Conversation transcripts and any contact details a visitor chooses to share are stored to "
            "improve answers and allow follow-up. Deletion requests are handled through support."
        ),
    ),
    KnowledgeEntry(
        id="security",
        category="policy",
        question_patterns=(r"\bsecurity\b", r"is\s+it\s+secure"),
        keywords=("security", "secure", "encryption", "sso", "rbac", "audit"),
        answer=(
            "All traffic is encrypted in transit, workspaces are isolated from each other and internal "
            "access is restricted. SSO and role-based access control are on the roadmap."
        ),
    ),
    KnowledgeEntry(
        id="limitations",
        category="transparency",
        question_patterns=(r"\blimitations\b", r"ticketing\s+system"),
        keywords=("limitations", "limits", "cannot", "missing", "ticketing"),
        answer=(
            "Current limitations: it is not a full ticketing system, advanced analytics are not yet "
            "available and escalation to Slack or email is still on the roadmap."
        ),
    ),
)


@dataclass(frozen=True)
class ProductProfile:
    # Canonical facts the general fallback may rely on; anything else is off limits.
    name: str
    tagline: str
    core_features: tuple[str, ...]
    pricing_summary: tuple[str, ...]
    disallowed_claims: tuple[str, ...]
    max_words: int = 140
    tone: str = "friendly, concise, professional"


PRODUCT_PROFILE = ProductProfile(
    name="TrulyBot",
    tagline="AI customer support chatbot for online stores",
    core_features=(
        "Instant answers from curated product knowledge",
        "Answers grounded in each business's uploaded documents",
        "Opt-in lead capture when visitors share contact details",
        "Embeddable, customizable chat widget",
        "WooCommerce plugin and universal script install",
    ),
    pricing_summary=(
        "Basic: 1,000 conversations per month",
        "Pro: unlimited conversations under fair use",
        "Ultra: unlimited conversations under fair use plus custom branding",
    ),
    disallowed_claims=(
        "Project or task management features",
        "Integrations that are not listed above",
        "Guaranteed conversion or revenue figures",
    ),
)
