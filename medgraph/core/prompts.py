# medgraph/core/prompts.py
# This file is the single source of truth for all AI prompt engineering.

CLASSIFY_TEXT_PROMPT = """
Analyze this text and determine if it contains medical information such as: patient data, medical records, prescriptions, diagnoses, symptoms, treatments, lab results, or healthcare-related content. Respond with 'yes' if it's medical-related, or 'no' if it's not.

Content:
{content}
""".strip()

CLASSIFY_MEDIA_PROMPT = """
Analyze this file and determine if it contains medical information such as: patient data, medical records, prescriptions, diagnoses, symptoms, treatments, lab results, medical imaging, or healthcare-related content. Respond with 'yes' if it's medical-related, or 'no' if it's not.
""".strip()

EXTRACT_GRAPH_PROMPT = """
You are a medical knowledge extraction AI. Extract entities (patients, conditions, medications, procedures, symptoms) and their relationships from {source}.
{content}
IMPORTANT: Identify the main DISEASE or CONDITION first. Extract all related symptoms, medications, procedures, and patient information connected to this condition.

Respond with ONLY a valid JSON object in the following format:
{{
  "nodes": [
    {{
      "id": "type_2_diabetes",
      "label": "Type 2 Diabetes",
      "type": "condition",
      "connections": ["metformin"],
      "data": {{ "onset": "2019", "severity": "moderate" }}
    }},
    ...
  ],
  "edges": [
    {{
      "source": "type_2_diabetes",
      "target": "metformin",
      "label": "treated with",
      "strength": 0.8
    }},
    ...
  ]
}}

- "id": unique identifier, lowercase and underscore separated.
- "label": display name.
- "type": one of patient, condition, medication, procedure, symptom. Mark the main disease or diagnosis as condition.
- "connections": ids of the nodes this node is related to.
- "data": flat object with additional details such as dosage, severity or onset date.
- "source" & "target": node ids from the "nodes" list.
- "label" on edges: the relationship in plain words (e.g. 'treated with').
- "strength": number between 0 and 1.
""".strip()

ANALYZE_NODE_PROMPT = """
You are a medical AI assistant analyzing a healthcare knowledge graph node.

{context}

Provide a comprehensive analysis including:
1. Summary of this node and its significance
2. Clinical implications
3. Relationships with connected entities
4. Risk factors or considerations
5. Relevant ICD-10 codes (if applicable for medical conditions)

Be specific, clinical, and actionable. If this is a condition, include the ICD-10 code.
""".strip()

ANALYZE_GRAPH_PROMPT = """
Analyze this healthcare knowledge graph and provide clinical insights:

{summary}

Respond with ONLY a valid JSON object with these keys:
- "patientSummary": brief overview of the patient including demographics and primary health status.
- "keyInsights": list of 3-5 key clinical insights.
- "treatmentRecommendations": list of {{"title", "description", "priority"}} where priority is High, Medium or Low.
- "riskFactors": list of {{"title", "description", "severity"}} where severity is High, Medium or Low.
- "suggestedTests": list of {{"name", "reason", "urgency"}} where urgency is Urgent, Routine or Follow-up.
- "icd10Codes": list of {{"code", "description"}} for every applicable ICD-10 code.
- "diagnosisSummary": summary of all diagnoses and their relationships.
- "medicationAnalysis": analysis of current medications, interactions, and effectiveness.
""".strip()

ANALYSIS_SYSTEM_INSTRUCTION = (
    "You are an expert medical AI assistant specializing in healthcare knowledge graphs "
    "and ICD-10 coding. Always provide accurate ICD-10 codes for medical conditions."
)
