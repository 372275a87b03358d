"""
Centralized constants and catalog data.

This module contains the approved ingredient catalog, the alias table used
by name normalization, formula dosage limits and provider model tables.
Centralizing these values keeps the catalog auditable in one place; it is
updated out-of-band and never mutated while requests are being served.

Categories:
- Formula dosage limits
- System Supports (fixed-dose blends)
- Individual Ingredients (fixed dose or dose range)
- Ingredient aliases
- Interaction warnings
- Provider model tables
"""

from typing import Dict, List, Optional, Tuple

# ==============================================================================
# FORMULA LIMITS
# ==============================================================================

FORMULA_LIMITS: Dict[str, object] = {
    "capsule_capacity_mg": 550,
    "allowed_capsule_counts": (6, 9, 12, 15),
    "default_capsule_count": 9,
    "min_ingredient_dose_mg": 10,
    "min_ingredient_count": 8,
    "max_ingredient_count": 50,
    # Capacity tolerance is the larger of the two
    "tolerance_fraction": 0.05,
    "tolerance_min_mg": 50,
}

# Multiples of the catalog dose accepted for System Supports by the
# dose migration utility
VALID_DOSE_MULTIPLIERS: Tuple[int, ...] = (1, 2, 3)

CATALOG_VERSION = "2025.1"

# ==============================================================================
# SYSTEM SUPPORTS
# ==============================================================================

# (name, dose_mg, description)
SYSTEM_SUPPORTS: List[Tuple[str, int, str]] = [
    ("Adrenal Support", 420, "Vitamin and herb complex for adrenal function and stress response"),
    ("Beta Max", 2500, "Liver, gallbladder and pancreas support for lipid and carbohydrate metabolism"),
    ("C Boost", 1680, "Vitamin C and bioflavonoid blend with antioxidant activity"),
    ("Chaga Mix", 3600, "Chaga mushroom blend for immune and cardiovascular support"),
    ("Endocrine Support", 350, "Pantothenic acid, manganese and glandular sources for endocrine balance"),
    ("Heart Support", 450, "Magnesium, l-carnitine and l-taurine for heart function"),
    ("Histamine Support", 190, "Mast cell stabilization for histamine reactions"),
    ("Immune-C", 430, "Graviola, vitamin C, camu camu and cat's claw immune blend"),
    ("Kidney & Bladder Support", 400, "Urinary tract and kidney function support"),
    ("Ligament Support", 400, "Connective tissue, joint and muscle support"),
    ("Liver Support", 480, "Bile production and liver function support"),
    ("Lung Support", 250, "Vitamins and antioxidants for lungs, lymph nodes and thymus"),
    ("MG/K", 540, "Magnesium and potassium for electrolyte balance"),
    ("Mold RX", 525, "Detoxification support after mold exposure"),
    ("Ovary Uterus Support", 300, "Female reproductive system support"),
    ("Para X", 500, "Herbal blend for intestinal parasite cleansing"),
    ("Prostate Support", 300, "Male prostate and urinary support"),
    ("Spleen Support", 400, "Spleen and lymphatic support"),
    ("Thyroid Support", 470, "Iodine and glandular support for thyroid hormone production"),
]

# ==============================================================================
# INDIVIDUAL INGREDIENTS
# ==============================================================================

# (name, dose_mg, range_min_mg, range_max_mg, description)
# Exactly one of dose_mg or the (min, max) pair is set. Entries whose
# source range collapses to a single value are listed as fixed doses.
INDIVIDUAL_INGREDIENTS: List[Tuple[str, Optional[int], Optional[int], Optional[int], str]] = [
    ("Algae Omega", 1000, None, None, "Plant-based omega-3 (EPA/DHA) from algae"),
    ("Alfalfa", None, 100, 1000, "Nutrient-dense legume leaf"),
    ("Aloe Vera Powder", 250, None, None, "Digestive and skin support"),
    ("Ashwagandha", 600, None, None, "Adaptogen for stress and cortisol balance"),
    ("Astragalus", None, 300, 500, "Immune-modulating root"),
    ("Blackcurrant Extract", 500, None, None, "Anthocyanin-rich berry extract"),
    ("Broccoli Concentrate", None, 100, 400, "Sulforaphane source for detox pathways"),
    ("Camu Camu", 2500, None, None, "Whole-food vitamin C"),
    ("Cape Aloe", None, 15, 30, "Gentle laxative leaf"),
    ("Cats Claw", None, 30, 500, "Immune and joint support vine bark"),
    ("Chaga", None, 1000, 2000, "Antioxidant mushroom"),
    ("Cilantro", None, 200, 500, "Heavy metal chelation support"),
    ("Cinnamon 20:1", None, 500, 1000, "Concentrated cinnamon for blood sugar support"),
    ("CoEnzyme Q10", None, 100, 200, "Mitochondrial energy production"),
    ("Colostrum Powder", None, 500, 1000, "Immunoglobulins for gut and immune health"),
    ("Fulvic Acid", None, 250, 500, "Mineral transport and absorption"),
    ("GABA", None, 100, 300, "Calming inhibitory neurotransmitter"),
    ("Garlic", 200, None, None, "Cardiovascular and immune support"),
    ("Ginger Root", None, 500, 2000, "Digestive and anti-inflammatory support"),
    ("Graviola", None, 500, 1500, "Soursop leaf antioxidant"),
    ("Green Tea", 676, None, None, "Catechins for metabolism"),
    ("Glutathione", 600, None, None, "Master antioxidant"),
    ("Hawthorn Berry", None, 50, 100, "Cardiovascular support"),
    ("InnoSlim", 250, None, None, "Glucose and weight management blend"),
    ("Lions Mane", 200, None, None, "Cognitive and nerve support mushroom"),
    ("L-Theanine", None, 200, 400, "Calm focus amino acid"),
    ("Milk Thistle", None, 200, 420, "Silymarin for liver protection"),
    ("NAD+", None, 100, 300, "Cellular energy coenzyme"),
    ("NMN", 250, None, None, "NAD+ precursor"),
    ("Red Ginseng", None, 200, 400, "Energy and vitality adaptogen"),
    ("Red Propolis", 500, None, None, "Bee-derived antimicrobial"),
    ("Rosemary", None, 100, 600, "Antioxidant and cognitive support"),
    ("Parsley", None, 200, 800, "Diuretic and mineral source"),
    ("Phosphatidylcholine", None, 250, 1200, "Cell membrane and liver support"),
    ("Quercetin", None, 50, 500, "Flavonoid for histamine and immune balance"),
    ("Saw Palmetto Extract", 320, None, None, "Prostate health support"),
    ("Sceletium", None, 15, 40, "Mood support succulent"),
    ("Shilajit", 300, None, None, "Fulvic mineral resin for energy"),
    ("Stinging Nettle", None, 500, 1500, "Allergy and prostate support"),
    ("Suma Root", None, 500, 1500, "Adaptogenic Brazilian ginseng"),
    ("Turmeric Root Extract 4:1", None, 400, 1000, "Curcumin for inflammation"),
    ("Vitamin C", 90, None, None, "Ascorbic acid"),
    ("Vitamin E", 2000, None, None, "Fat-soluble antioxidant"),
]

# ==============================================================================
# INGREDIENT ALIASES
# ==============================================================================

# Keys are lowercase, whitespace-collapsed spellings; values are canonical names
INGREDIENT_ALIASES: Dict[str, str] = {
    "cboost": "C Boost",
    "c-boost": "C Boost",
    "omega 3": "Algae Omega",
    "omega-3": "Algae Omega",
    "omega3": "Algae Omega",
    "algae oil": "Algae Omega",
    "coq10": "CoEnzyme Q10",
    "coenzyme q10": "CoEnzyme Q10",
    "ubiquinone": "CoEnzyme Q10",
    "lion's mane": "Lions Mane",
    "lions mane mushroom": "Lions Mane",
    "cat's claw": "Cats Claw",
    "nad": "NAD+",
    "mgk": "MG/K",
    "mg/k support": "MG/K",
    "immune c": "Immune-C",
    "kidney and bladder support": "Kidney & Bladder Support",
    "mold rx support": "Mold RX",
    "parax": "Para X",
    "l theanine": "L-Theanine",
    "theanine": "L-Theanine",
    "ascorbic acid": "Vitamin C",
    "panax ginseng": "Red Ginseng",
    "korean red ginseng": "Red Ginseng",
    "nettle": "Stinging Nettle",
    "egcg": "Green Tea",
}

# Potency/extraction words removed during normalization
QUALIFIER_WORDS: Tuple[str, ...] = (
    "extract",
    "root",
    "powder",
    "standardized",
)

# ==============================================================================
# INTERACTION WARNINGS
# ==============================================================================

# Keys are lowercase keywords matched as whole words against ingredient names

SUPPLEMENT_WARNINGS: Dict[str, str] = {
    "iron": "Iron supplements can be toxic in excess. Monitor iron levels and avoid if you have hemochromatosis.",
    "vitamin a": "High-dose Vitamin A can be toxic. Avoid during pregnancy.",
    "vitamin k": "Vitamin K affects blood clotting. Monitor if taking blood thinners.",
    "5-htp": "5-HTP affects serotonin levels. Can cause serotonin syndrome with antidepressants.",
    "same": "SAMe affects neurotransmitters. Can interact with antidepressants and blood thinners.",
    "ginseng": "Ginseng can affect blood pressure and blood sugar. Monitor if diabetic or hypertensive.",
    "ginkgo": "Ginkgo increases bleeding risk. Avoid before surgery or with blood thinners.",
    "garlic": "High-dose garlic increases bleeding risk. Avoid before surgery.",
    "ginger": "High-dose ginger increases bleeding risk and can affect blood pressure.",
    "turmeric": "Turmeric/Curcumin increases bleeding risk and can affect blood sugar.",
    "st. john's wort": (
        "St. John's Wort interacts with many medications including birth control, "
        "antidepressants, and blood thinners."
    ),
    "kava": "Kava can cause liver damage. Avoid if you have liver problems or take liver-affecting medications.",
    "yohimbe": "Yohimbe can cause dangerous blood pressure changes and heart problems.",
    "ephedra": "Ephedra (Ma Huang) can cause heart problems and is banned in many supplements.",
    "comfrey": "Comfrey can cause liver damage and is not safe for internal use.",
}

# ingredient keyword -> medication keyword -> warning
MEDICATION_INTERACTIONS: Dict[str, Dict[str, str]] = {
    # Blood thinners and coagulation
    "vitamin k": {
        "warfarin": "Vitamin K can interfere with warfarin effectiveness. Monitor INR closely.",
        "coumadin": "Vitamin K can interfere with coumadin effectiveness. Monitor INR closely.",
        "heparin": "Vitamin K can affect clotting times with heparin.",
        "aspirin": "Monitor bleeding risk when combining Vitamin K with aspirin.",
    },
    "garlic": {
        "warfarin": "Garlic may increase bleeding risk with warfarin.",
        "aspirin": "Garlic + aspirin increases bleeding risk.",
        "clopidogrel": "Garlic may increase bleeding risk with clopidogrel.",
    },
    "ginkgo": {
        "warfarin": "Ginkgo significantly increases bleeding risk with warfarin.",
        "aspirin": "Ginkgo + aspirin increases bleeding risk.",
        "ibuprofen": "Ginkgo + NSAIDs increases bleeding risk.",
    },
    # Mood and psychiatric medications
    "st. john's wort": {
        "ssri": "St. John's Wort may cause serotonin syndrome with SSRIs.",
        "antidepressants": "St. John's Wort may interact with antidepressants causing serotonin syndrome.",
        "birth control": "St. John's Wort can reduce birth control effectiveness.",
        "digoxin": "St. John's Wort can reduce digoxin levels.",
        "cyclosporine": "St. John's Wort can reduce cyclosporine levels.",
        "simvastatin": "St. John's Wort can reduce statin effectiveness.",
    },
    "5-htp": {
        "ssri": "5-HTP with SSRIs may cause serotonin syndrome.",
        "antidepressants": "5-HTP with antidepressants may cause serotonin syndrome.",
        "maoi": "5-HTP with MAOIs can be dangerous.",
        "tramadol": "5-HTP with tramadol increases serotonin syndrome risk.",
    },
    "same": {
        "antidepressants": "SAMe can interact with antidepressants.",
        "maoi": "SAMe with MAOIs can cause dangerous interactions.",
    },
    # Cardiovascular medications
    "ginseng": {
        "blood pressure": "Ginseng may interact with blood pressure medications.",
        "ace inhibitor": "Ginseng may affect ACE inhibitor effectiveness.",
        "beta blocker": "Ginseng may interact with beta blockers.",
        "calcium channel blocker": "Ginseng may affect calcium channel blockers.",
        "digoxin": "Ginseng may increase digoxin levels.",
        "warfarin": "Ginseng may affect warfarin metabolism.",
    },
    "hawthorn": {
        "digoxin": "Hawthorn may increase digoxin effects.",
        "beta blocker": "Hawthorn may enhance beta blocker effects.",
        "calcium channel blocker": "Hawthorn may enhance calcium channel blocker effects.",
    },
    # Diabetes medications
    "chromium": {
        "insulin": "Chromium may enhance insulin effects - monitor blood sugar.",
        "metformin": "Chromium may enhance metformin effects.",
        "diabetes": "Chromium may affect blood sugar levels with diabetes medications.",
    },
    "cinnamon": {
        "diabetes": "Cinnamon may enhance diabetes medication effects - monitor blood sugar.",
        "insulin": "Cinnamon may enhance insulin effects.",
    },
    # Thyroid medications
    "iron": {
        "thyroid": "Iron can interfere with thyroid medication absorption. Take 4+ hours apart.",
        "levothyroxine": "Iron reduces levothyroxine absorption. Take 4+ hours apart.",
        "calcium": "Iron and calcium compete for absorption. Take separately.",
    },
    "calcium": {
        "thyroid": "Calcium can interfere with thyroid medication absorption.",
        "levothyroxine": "Calcium reduces levothyroxine absorption. Take 4+ hours apart.",
        "antibiotics": "Calcium can reduce antibiotic absorption.",
    },
    # Seizure medications
    "folate": {
        "phenytoin": "Folate may reduce phenytoin levels.",
        "carbamazepine": "Folate may interact with carbamazepine.",
        "valproic acid": "Folate may interact with valproic acid.",
    },
    # Immunosuppressants
    "echinacea": {
        "immunosuppressant": "Echinacea may counteract immunosuppressive medications.",
        "cyclosporine": "Echinacea may reduce cyclosporine effectiveness.",
        "tacrolimus": "Echinacea may interact with tacrolimus.",
    },
    # Antibiotics
    "zinc": {
        "antibiotic": "Zinc can reduce antibiotic absorption. Take 2+ hours apart.",
        "quinolone": "Zinc significantly reduces quinolone antibiotic absorption.",
    },
    # Sleep medications
    "melatonin": {
        "sedative": "Melatonin may enhance sedative effects.",
        "sleeping pill": "Melatonin may enhance sleeping medication effects.",
        "benzodiazepine": "Melatonin may enhance benzodiazepine effects.",
    },
    "valerian": {
        "sedative": "Valerian may enhance sedative effects.",
        "sleeping pill": "Valerian may enhance sleeping medication effects.",
    },
}

# (keywords that must all be present, warning)
SUPPLEMENT_PAIR_INTERACTIONS: List[Tuple[Tuple[str, str], str]] = [
    (("iron", "calcium"),
     "Iron and Calcium compete for absorption. Take Iron and Calcium supplements 2+ hours apart."),
    (("zinc", "copper"),
     "High-dose Zinc can deplete Copper. Maintain 10:1 Zinc:Copper ratio."),
    (("vitamin c", "iron"),
     "Vitamin C enhances Iron absorption - monitor for iron overload if taking both."),
    (("magnesium", "calcium"),
     "High-dose Calcium can interfere with Magnesium absorption. Balance is important."),
    (("5-htp", "same"),
     "Both 5-HTP and SAMe affect serotonin/neurotransmitters. Avoid combining without medical supervision."),
]

INTERACTION_PREFIX = "INTERACTION: "

INTERACTION_DISCLAIMER = (
    "IMPORTANT: These are potential interactions. "
    "Always consult your healthcare provider before starting new supplements."
)

# ==============================================================================
# PROVIDER MODELS
# ==============================================================================

DEFAULT_MODELS: Dict[str, str] = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o",
}

ALLOWED_MODELS: Dict[str, List[str]] = {
    "anthropic": [
        "claude-sonnet-4-5",
        "claude-haiku-4-5",
        "claude-opus-4-1",
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
    ],
    "openai": [
        "gpt-5",
        "gpt-4o",
        "gpt-4o-mini",
    ],
}

# (pattern, canonical id); first match wins, matched against the
# lowercased, hyphenated input
MODEL_ALIASES: Dict[str, List[Tuple[str, str]]] = {
    "anthropic": [
        (r"^(claude-?)?sonnet-?4[.-]?5", "claude-sonnet-4-5"),
        (r"^claude-?4[.-]?5(-sonnet)?$", "claude-sonnet-4-5"),
        (r"^(claude-?)?haiku-?4[.-]?5", "claude-haiku-4-5"),
        (r"^(claude-?)?opus-?4[.-]?1", "claude-opus-4-1"),
        (r"^claude-?3[.-]?5-?haiku", "claude-3-5-haiku-20241022"),
        (r"^(claude-?)?haiku-?3[.-]?5", "claude-3-5-haiku-20241022"),
        (r"^claude-?3[.-]?5(-?sonnet)?$", "claude-3-5-sonnet-20241022"),
    ],
    "openai": [
        (r"^gpt[-_]?5$", "gpt-5"),
        (r"^gpt[-_]?4o$", "gpt-4o"),
        (r"^gpt[-_]?4o[-_]?mini$", "gpt-4o-mini"),
    ],
}

# OpenAI models that take max_completion_tokens and reject temperature
OPENAI_REASONING_MODEL_PREFIXES: Tuple[str, ...] = ("gpt-5", "o1", "o3", "o4")
