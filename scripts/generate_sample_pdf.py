#!/usr/bin/env python3
"""
Generate a small multi-page PDF for trying the ingestion pipeline locally.

Each page holds a few paragraphs separated by blank lines so the paragraph
and sentence strategies produce visibly different chunks.

Usage:
    python scripts/generate_sample_pdf.py [output.pdf]

Then:
    curl -H "X-Tenant-ID: demo" -F file=@data/samples/field_guide.pdf \
        http://localhost:8000/documents/upload
"""

import sys
from pathlib import Path

import fitz

PAGES = [
    (
        "Urban Beekeeping Field Guide",
        [
            "Honey bees forage up to five kilometres from the hive. In dense "
            "cities, rooftop gardens and street trees provide most of the "
            "nectar between April and July.",
            "A healthy colony in early summer holds between 30,000 and 60,000 "
            "workers. The queen lays up to 2,000 eggs per day at peak season.",
        ],
    ),
    (
        "Hive Inspections",
        [
            "Inspect every seven to ten days during swarm season. Look for "
            "queen cells along the bottom bars of the frames; their presence "
            "means the colony is preparing to swarm.",
            "Work on warm, calm afternoons when most foragers are out. Use as "
            "little smoke as possible and keep frames over the open box.",
        ],
    ),
    (
        "Harvest and Winter",
        [
            "Only harvest frames that are at least 80% capped. Uncapped honey "
            "has too much moisture and will ferment in the jar.",
            "Leave 15 to 20 kilograms of stores for winter. Colonies rarely "
            "die of cold; they die of starvation or varroa.",
        ],
    ),
]


def generate(output: Path) -> Path:
    doc = fitz.open()
    for title, paragraphs in PAGES:
        page = doc.new_page()
        page.insert_text((72, 72), title, fontsize=16)
        body = "\n\n".join(paragraphs)
        page.insert_textbox(fitz.Rect(72, 100, 523, 770), body, fontsize=11)
    output.parent.mkdir(parents=True, exist_ok=True)
    doc.save(str(output))
    doc.close()
    return output


if __name__ == "__main__":
    target = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("data/samples/field_guide.pdf")
    print(f"Wrote {generate(target)}")
