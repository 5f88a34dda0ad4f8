# Copyright (c) 2025-2026 Gowtham Adamane Rao. All Rights Reserved.
#
# Licensed under the Prosperity Public License 3.0.0 (the "License").
# You may not use this file except in compliance with the License.
# You may obtain a copy of the License in the LICENSE file at the root
# of this repository, or at: https://prosperitylicense.com/versions/3.0.0
#
# Commercial use beyond a 30-day trial requires a separate license.
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    """
    Manages the application's configuration settings.
    Utilizes Pydantic's BaseSettings to allow for environment variable overrides.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="PYNEOOMOPCODESETS_"
    )

    # --- Neo4j Vocabulary Store ---
    neo4j_uri: str = Field("neo4j://localhost:7687", description="Neo4j instance URI.")
    neo4j_user: str = Field("neo4j", description="Neo4j username.")
    neo4j_password: str = Field("password", description="Neo4j password.")
    neo4j_database: str = Field("neo4j", description="Neo4j target database name.")
    neo4j_fallback_uri: Optional[str] = Field(
        default=None,
        description="Optional secondary Neo4j URI queried when the primary instance fails."
    )

    # --- Vocabulary Ingestion ---
    vocabulary_filter: List[str] = Field(
        default=[
            "SNOMED", "ICD10CM", "ICD9CM", "RxNorm", "NDC", "ATC", "CVX",
            "CPT4", "HCPCS", "LOINC", "ICD9PCS", "ICD10PCS"
        ],
        description="List of OMOP vocabulary_ids to include when loading Athena files."
    )
    load_batch_size: int = Field(
        default=5000,
        description="Number of rows sent per UNWIND statement when loading the vocabulary into Neo4j."
    )

    # --- Code Set Building ---
    materialization_threshold: int = Field(
        default=500,
        description="Code sets with fewer concepts than this are stored in full; larger ones store anchors only."
    )
    attribute_join_separator: str = Field(
        default=", ",
        description="Separator used when several lab attribute values are aggregated into one field."
    )

    # --- Concept Search ---
    search_min_term_length: int = Field(default=2, description="Minimum length of a search term.")
    search_result_limit: int = Field(default=1000, description="Maximum number of ranked search results returned.")
    search_scan_limit: int = Field(
        default=20000,
        description="Maximum number of candidate concepts read from the store before ranking."
    )

    # --- Lab Attribute Rollups ---
    rollup_dir: Optional[str] = Field(
        default=None,
        description="Directory holding the rollup JSON tables. Defaults to the tables shipped with the package."
    )


# Instantiate a global settings object to be used throughout the application
settings = Settings()
